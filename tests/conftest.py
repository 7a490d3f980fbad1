import json
from typing import Dict, List, Optional, Tuple

import pytest

from scraper import FetchResult
from store import SnapshotStore


BASE_URL = "https://shop.test"
CATALOG_URL = "https://shop.test/collections/menswear/"


class FakeFetcher:
    """Serves canned (status, body) pairs by exact URL and records requests."""

    def __init__(self, pages: Optional[Dict[str, Tuple[int, str]]] = None) -> None:
        self.pages = pages or {}
        self.requested: List[str] = []

    def get(self, url: str) -> FetchResult:
        self.requested.append(url)
        status, text = self.pages.get(url, (404, "Not Found"))
        return FetchResult(url=url, status=status, ok=200 <= status < 300, text=text)


def catalog_page(hrefs: List[str]) -> str:
    anchors = "\n".join(f'<a href="{h}">link</a>' for h in hrefs)
    return f"<html><body><div class=\"grid\">{anchors}</div></body></html>"


def sizing_script(variants: list, marker: str = "KiwiSizing.data") -> str:
    return f"""<script>
  var KiwiSizing = KiwiSizing === undefined ? {{}} : KiwiSizing;
  {marker} = {{
    product: "6543",
    vendor: "Community Clothing",
    variants: {json.dumps(variants)},
  }};
</script>"""


def product_page(variants: list, marker: str = "KiwiSizing.data", extra_scripts: str = "") -> str:
    return f"""<html><head>
<script>window.ShopifyAnalytics = {{}};</script>
{sizing_script(variants, marker)}
{extra_scripts}
</head><body><h1>Product</h1></body></html>"""


def variant(id: int, title: str, qty: int, price: int = 6900, name: Optional[str] = None) -> dict:
    return {
        "id": id,
        "title": title,
        "price": price,
        "name": name or f"Chino - {title}",
        "inventory_quantity": qty,
        "sku": f"SKU-{id}",
        "available": qty > 0,
    }


@pytest.fixture
def store(tmp_path) -> SnapshotStore:
    return SnapshotStore(str(tmp_path / "data"), "product_links.txt", "latest_menswear.csv")


@pytest.fixture
def store_for():
    """Build a store from a Config, as main() does."""
    def build(cfg) -> SnapshotStore:
        return SnapshotStore(cfg.data_dir, cfg.links_file, cfg.latest_file)
    return build
