import csv
import shutil
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from pydantic import BaseModel, ValidationError
from rich.console import Console
from rich.markup import escape


console = Console()


class ScrapedRecord(BaseModel):
    """One snapshot row: a single variant flattened with its product link."""
    product_link: str
    title: str
    name: str
    price: int
    inventory_quantity: int


def expected_header() -> List[str]:
    """Define the CSV header order written by the snapshot sink."""
    return [
        "product_link",
        "title",
        "name",
        "price",
        "inventory_quantity",
    ]


class SnapshotStore:
    """Flat-file persistence for the link list and the CSV snapshots.

    - `links_file` holds one product link per line
    - each fetch run writes `<timestamp>_menswear.csv` under `data_dir`
    - `latest_file` is always a copy of the most recent snapshot
    """

    def __init__(self, data_dir: str, links_file: str, latest_file: str) -> None:
        self.data_dir = Path(data_dir)
        self.links_path = self.data_dir / links_file
        self.latest_path = self.data_dir / latest_file

    def ensure_dirs(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def links_exist(self) -> bool:
        return self.links_path.exists()

    def write_links(self, links: Iterable[str]) -> int:
        """Overwrite the link file with one link per line."""
        self.ensure_dirs()
        count = 0
        with self.links_path.open("w", encoding="utf-8") as f:
            for link in links:
                f.write(f"{link}\n")
                count += 1
        return count

    def read_links(self) -> List[str]:
        """Links in file order; blank lines are dropped."""
        with self.links_path.open("r", encoding="utf-8") as f:
            return [line.strip() for line in f if line.strip()]

    def new_snapshot_path(self, now: Optional[datetime] = None) -> Path:
        ts = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
        return self.data_dir / f"{ts}_menswear.csv"

    def write_snapshot(self, csv_path: Path, records: Iterable[ScrapedRecord]) -> int:
        """Write the header and every record, returning the row count."""
        self.ensure_dirs()
        count = 0
        with csv_path.open("w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(expected_header())
            for r in records:
                writer.writerow([
                    r.product_link,
                    r.title,
                    r.name,
                    r.price,
                    r.inventory_quantity,
                ])
                count += 1
        return count

    def publish_latest(self, csv_path: Path) -> Path:
        """Copy a finished snapshot over the fixed latest file."""
        shutil.copyfile(csv_path, self.latest_path)
        console.log(f"Copied {csv_path} to {self.latest_path}")
        return self.latest_path

    def read_snapshot(self, csv_path: Optional[Path] = None) -> List[ScrapedRecord]:
        """Read a snapshot (the latest one by default).

        A file with an unexpected header yields no rows; rows whose numeric
        columns do not parse are skipped.
        """
        path = csv_path or self.latest_path
        records: List[ScrapedRecord] = []
        with path.open("r", newline="", encoding="utf-8") as f:
            reader = csv.DictReader(f)
            if reader.fieldnames != expected_header():
                console.log(f"Unexpected header in {path}: {escape(str(reader.fieldnames))}")
                return records
            for line_no, row in enumerate(reader, start=2):
                try:
                    records.append(ScrapedRecord(**{k: row.get(k) for k in expected_header()}))
                except ValidationError as e:
                    console.log(f"Skipping malformed row {line_no} in {path}: {e.error_count()} error(s)")
                    continue
        return records
