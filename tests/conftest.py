import sys
from pathlib import Path

import pytest

# Ensure project root is on sys.path to allow `import agents`, `import utils`, etc.
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from models.pricing import CompetitorPrice, Credential, Product  # noqa: E402


@pytest.fixture
def credentials() -> list[Credential]:
    return [
        Credential(user_id="U1", api_key="key-1", merchant_id="M1"),
        Credential(user_id="U2", api_key="key-2", merchant_id="M2"),
    ]


@pytest.fixture
def products() -> list[Product]:
    """Two users, products covering every decision branch."""
    return [
        Product("A", "U1", "EXT-A", name="Phone", price=15500, repricing_enabled=True, current_stock=5),
        Product("B", "U1", "EXT-B", name="Case", price=3000, repricing_enabled=True, current_stock=3),
        Product("C", "U1", "EXT-C", name="Headphones", price=10500, min_price=10000,
                repricing_enabled=True, current_stock=1),
        Product("D", "U2", "EXT-D", name="Tablet", price=17999, repricing_enabled=True, current_stock=2),
        Product("E", "U2", "EXT-E", name="Watch", price=8000, repricing_enabled=True, current_stock=7),
        Product("F", "U2", "EXT-F", name="Cable", price=1200, repricing_enabled=True, current_stock=0),
        Product("G", "U2", "EXT-G", name="Charger", price=2500, repricing_enabled=False, current_stock=9),
    ]


@pytest.fixture
def observations() -> dict[str, list[CompetitorPrice]]:
    return {
        "EXT-A": [CompetitorPrice("X", 15000)],
        "EXT-B": [CompetitorPrice("Y", 2800), CompetitorPrice("Z", 2900)],
        "EXT-C": [CompetitorPrice("X", 10000)],
        "EXT-D": [CompetitorPrice("X", 20000), CompetitorPrice("Y", 18000)],
        # EXT-E: no competitors
        "EXT-F": [CompetitorPrice("X", 1000)],
        "EXT-G": [CompetitorPrice("X", 2000)],
    }
