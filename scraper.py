import argparse
import json
import os
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError
from rich.console import Console
from rich.markup import escape
from playwright.sync_api import APIRequestContext, Error as PWError, Playwright, sync_playwright

from finder import print_matches, select_rows
from store import ScrapedRecord, SnapshotStore


__version__ = "0.1.0"

console = Console()

#
# High-level overview
# - Configuration: runtime knobs via environment variables (`Config`)
# - Fetching: blocking GETs through a Playwright request context (`PageFetcher`)
# - Catalog: collect product links from page 1, learn the page count from
#   `page=N` anchors, then walk pages 2..N in order
# - Product pages: pull the sizing script's `variants` array into `Variant`s
# - Snapshot: one row per variant into a timestamped CSV, copied to "latest"
# - Entrypoint: `main` wires config and dispatches `fetch` / `filter`

PRODUCT_MARKER = "/products/"
VARIANTS_KEY = "variants"
PAGE_PATTERN = re.compile(r"[?&]page=(\d+)")


@dataclass
class Config:
    base_url: str = field(default_factory=lambda: os.getenv("CC_BASE_URL", "https://communityclothing.co.uk"))
    catalog_path: str = field(default_factory=lambda: os.getenv("CC_CATALOG_PATH", "/collections/menswear/"))
    # The site answers requests without an identifying agent with a 403
    user_agent: str = field(default_factory=lambda: os.getenv("CC_USER_AGENT", f"ccscrape/{__version__}"))
    data_dir: str = field(default_factory=lambda: os.getenv("CC_DATA_DIR", "data"))
    links_file: str = field(default_factory=lambda: os.getenv("CC_LINKS_FILE", "product_links.txt"))
    latest_file: str = field(default_factory=lambda: os.getenv("CC_LATEST_FILE", "latest_menswear.csv"))
    size_marker: str = field(default_factory=lambda: os.getenv("CC_SIZE_MARKER", "KiwiSizing.data"))
    timeout_ms: int = field(default_factory=lambda: int(os.getenv("CC_TIMEOUT_MS", "30000")))

    @property
    def catalog_url(self) -> str:
        return self.base_url.rstrip("/") + "/" + self.catalog_path.lstrip("/")


class Variant(BaseModel):
    """One purchasable size of a product as embedded in the sizing script."""
    id: int
    title: str
    price: int
    name: str
    inventory_quantity: int


class Product(BaseModel):
    """A product link and its variants.

    `variants` is None when the page failed, carried no sizing payload, or
    the payload could not be parsed.
    """
    product_link: str
    variants: Optional[List[Variant]] = None

    @property
    def has_variants(self) -> bool:
        return bool(self.variants)

    def records(self) -> List[ScrapedRecord]:
        return [
            ScrapedRecord(
                product_link=self.product_link,
                title=v.title,
                name=v.name,
                price=v.price,
                inventory_quantity=v.inventory_quantity,
            )
            for v in self.variants or []
        ]


class PayloadError(ValueError):
    """The sizing payload was found but is not a valid variants array."""


@dataclass
class FetchResult:
    url: str
    status: int
    ok: bool
    text: str


class PageFetcher:
    """Blocking HTTP client with a fixed User-Agent.

    Uses Playwright's API request context, so no browser is launched.
    Transport failures raise `playwright.sync_api.Error`; HTTP error statuses
    are returned to the caller in the `FetchResult`.
    """

    def __init__(self, user_agent: str, timeout_ms: int = 30000) -> None:
        self.user_agent = user_agent
        self.timeout_ms = timeout_ms
        self._playwright: Optional[Playwright] = None
        self._request: Optional[APIRequestContext] = None

    def __enter__(self) -> "PageFetcher":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def start(self) -> None:
        self._playwright = sync_playwright().start()
        self._request = self._playwright.request.new_context(
            user_agent=self.user_agent,
            timeout=self.timeout_ms,
        )

    def close(self) -> None:
        if self._request:
            self._request.dispose()
            self._request = None
        if self._playwright:
            self._playwright.stop()
            self._playwright = None

    def get(self, url: str) -> FetchResult:
        if self._request is None:
            raise RuntimeError("PageFetcher used before start()")
        resp = self._request.get(url)
        try:
            return FetchResult(url=url, status=resp.status, ok=resp.ok, text=resp.text())
        finally:
            resp.dispose()


def extract_hrefs(html: str) -> List[str]:
    """Every anchor href in document order."""
    soup = BeautifulSoup(html, "lxml")
    return [a["href"] for a in soup.find_all("a", href=True)]


def page_number(href: str) -> Optional[int]:
    m = PAGE_PATTERN.search(href)
    return int(m.group(1)) if m else None


def classify_links(hrefs: Iterable[str]) -> Tuple[List[str], List[int]]:
    """Split hrefs into product links and pagination page numbers.

    Pagination wins when an href carries both markers.
    """
    product_links: List[str] = []
    pages: List[int] = []
    for href in hrefs:
        n = page_number(href)
        if n is not None:
            pages.append(n)
        elif PRODUCT_MARKER in href:
            product_links.append(href)
    return product_links, pages


def page_url(catalog_url: str, page: int) -> str:
    sep = "&" if "?" in catalog_url else "?"
    return f"{catalog_url}{sep}page={page}"


def _report_failure(result: FetchResult) -> None:
    console.log(f"Status: {result.status} for {escape(result.url)}")
    console.print(result.text, markup=False, highlight=False)


def crawl_product_links(fetcher: Any, catalog_url: str) -> List[str]:
    """Walk every catalog page once, in order, and return sorted unique
    product links.

    Page 1 gives the page count: the highest `page=N` anchor, or a single
    page when there are none. If page 1 itself fails there is nothing to
    walk and the result is empty.
    """
    console.log("Finding out how many pages there are, and getting the first page of products at the same time.")
    product_links: List[str] = []

    first = fetcher.get(catalog_url)
    if first.ok:
        links, pages = classify_links(extract_hrefs(first.text))
        product_links.extend(links)
        total_pages = max(pages, default=1)
    else:
        _report_failure(first)
        total_pages = 0
    console.log(f"Catalog has {total_pages} page(s)")

    # Pages are 1-indexed and page 1 is already done
    for page in range(2, total_pages + 1):
        console.log(f"Getting products for page {page}")
        result = fetcher.get(page_url(catalog_url, page))
        if not result.ok:
            _report_failure(result)
            continue
        links, _ = classify_links(extract_hrefs(result.text))
        product_links.extend(links)

    unique = sorted(set(product_links))
    console.log(f"Discovered {len(unique)} product links")
    return unique


def get_products_links(fetcher: Any, catalog_url: str, store: SnapshotStore) -> List[str]:
    """Crawl the catalog and overwrite the link file with the result."""
    links = crawl_product_links(fetcher, catalog_url)
    store.write_links(links)
    console.log(f"Saved {len(links)} links to {store.links_path}")
    return links


def _strip_assignment(line: str) -> str:
    """Reduce `variants: [...],` (or `"variants" = [...]`) to the JSON array."""
    stripped = line.strip()
    rest = stripped[stripped.find(VARIANTS_KEY) + len(VARIANTS_KEY):]
    m = re.search(r"[:=]", rest)
    if m:
        rest = rest[m.end():]
    return rest.strip().rstrip(",").strip()


def parse_variant_payload(payload: str) -> List[Variant]:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise PayloadError(f"invalid variants JSON: {e}") from e
    if not isinstance(data, list):
        raise PayloadError(f"variants payload is a {type(data).__name__}, expected a list")
    try:
        return [Variant.model_validate(item) for item in data]
    except ValidationError as e:
        raise PayloadError(f"invalid variant record: {e.error_count()} error(s)") from e


def parse_variants(html: str, marker: str = "KiwiSizing.data") -> Optional[List[Variant]]:
    """Find the sizing script on a product page and parse its variants.

    Returns None when no script carries the marker. If several lines match,
    the last one parsed wins.
    """
    soup = BeautifulSoup(html, "lxml")
    variants: Optional[List[Variant]] = None
    for tag in soup.find_all("script"):
        text = tag.string or ""
        if marker not in text:
            continue
        for line in text.split("\n"):
            if VARIANTS_KEY in line:
                variants = parse_variant_payload(_strip_assignment(line))
    return variants


def product_url(base_url: str, product_link: str) -> str:
    return urljoin(base_url, product_link)


def get_product(
    fetcher: Any,
    base_url: str,
    product_link: str,
    marker: str = "KiwiSizing.data",
    fail_fast: bool = False,
) -> Product:
    """Fetch one product page. Error statuses give a product without
    variants; a malformed payload is logged and skipped unless `fail_fast`."""
    product = Product(product_link=product_link)
    result = fetcher.get(product_url(base_url, product_link))
    if not result.ok:
        return product
    try:
        product.variants = parse_variants(result.text, marker)
    except PayloadError as e:
        if fail_fast:
            raise
        console.log(f"Skipping {escape(product_link)}: {escape(str(e))}")
    return product


def get_products(
    fetcher: Any,
    base_url: str,
    product_links: Sequence[str],
    store: SnapshotStore,
    marker: str = "KiwiSizing.data",
    fail_fast: bool = False,
) -> Path:
    """Visit every product link in order, write one row per variant to a new
    snapshot, and publish it as the latest snapshot."""
    csv_path = store.new_snapshot_path()
    records: List[ScrapedRecord] = []
    for i, link in enumerate(product_links):
        console.log(f"Visiting product {i+1}/{len(product_links)}: {escape(link)}")
        product = get_product(fetcher, base_url, link, marker=marker, fail_fast=fail_fast)
        if not product.has_variants:
            console.log(f"No variants extracted for {escape(link)}")
            continue
        records.extend(product.records())

    count = store.write_snapshot(csv_path, records)
    console.log(f"Wrote {count} rows to {csv_path}")
    store.publish_latest(csv_path)
    return csv_path


def run_fetch(
    fetcher: Any,
    cfg: Config,
    store: SnapshotStore,
    use_existing_links: bool = False,
    fail_fast: bool = False,
) -> Path:
    store.ensure_dirs()
    if not use_existing_links:
        get_products_links(fetcher, cfg.catalog_url, store)
    elif not store.links_exist():
        console.log("You asked me to use the existing links file but it doesn't exist so I'll get the links now.")
        get_products_links(fetcher, cfg.catalog_url, store)
    links = store.read_links()
    return get_products(fetcher, cfg.base_url, links, store, marker=cfg.size_marker, fail_fast=fail_fast)


def run_filter(store: SnapshotStore, waist: str, leg: str, size: str) -> List[ScrapedRecord]:
    selected = select_rows(store.read_snapshot(), waist, leg, size)
    print_matches(selected)
    return selected


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ccscrape",
        description="A scraper for Community Clothing. Their products are fantastic; their website's search feature is poor.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    fetch = sub.add_parser("fetch", help="Fetch products from the Community Clothing website")
    fetch.add_argument(
        "-u",
        "--use-existing-links",
        action="store_true",
        help="Fetch but use the existing links file",
    )
    fetch.add_argument(
        "--fail-fast",
        action="store_true",
        help="Abort on a malformed sizing payload instead of skipping the product",
    )

    flt = sub.add_parser("filter", help="List in-stock variants from the latest snapshot")
    flt.add_argument("waist", help="Waist size, e.g. 32")
    flt.add_argument("leg", help="Leg length, e.g. 30")
    flt.add_argument("size", help="Letter size for everything else, e.g. L")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entrypoint: load configuration and dispatch the chosen command."""
    load_dotenv()
    cfg = Config()
    args = build_parser().parse_args(argv)
    store = SnapshotStore(cfg.data_dir, cfg.links_file, cfg.latest_file)

    try:
        if args.command == "fetch":
            with PageFetcher(cfg.user_agent, cfg.timeout_ms) as fetcher:
                run_fetch(
                    fetcher,
                    cfg,
                    store,
                    use_existing_links=args.use_existing_links,
                    fail_fast=args.fail_fast,
                )
        else:
            if not store.latest_path.exists():
                console.log(f"No snapshot at {store.latest_path}, run 'fetch' first")
                return 1
            run_filter(store, args.waist, args.leg, args.size)
    except KeyboardInterrupt:
        console.log("Interrupted by user")
        return 130
    except (PWError, PayloadError) as e:
        console.log(f"Fatal error: {escape(str(e))}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
