from typing import Iterable, List

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from store import ScrapedRecord


console = Console()


def matches(title: str, waist: str, leg: str, size: str) -> bool:
    """Return True when a variant title fits the requested measurements.

    Titles are free text, so matching is plain case-sensitive substring
    search. Any one rule is enough:
    - trousers: "<waist> waist/<leg> leg"
    - shorts: "<waist> waist" on a title without "leg"
    - everything else: the title is exactly the size code (e.g. "L")
    """
    if f"{waist} waist/{leg} leg" in title:
        return True
    if "leg" not in title and f"{waist} waist" in title:
        return True
    return title == size


def select_rows(records: Iterable[ScrapedRecord], waist: str, leg: str, size: str) -> List[ScrapedRecord]:
    """In-stock records whose title matches, in snapshot order."""
    return [
        r for r in records
        if r.inventory_quantity > 0 and matches(r.title, waist, leg, size)
    ]


def print_matches(records: Iterable[ScrapedRecord], out: Console = console) -> None:
    table = Table("Name", "Price")
    for r in records:
        table.add_row(escape(r.name), str(r.price))
    out.print(table)
