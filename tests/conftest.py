"""Test fixtures. Environment is set before any pricewatch module reads it."""

import os

os.environ.setdefault("MONGO_URL", "mongodb://debug-mock")
os.environ.setdefault("MONGO_DB", "pricewatch_test")
os.environ.setdefault("SCRAPERS", "demo:shopee,demo:lazada")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from fakes import MockCollection, candidate
from pricewatch.history import SearchHistoryService
from pricewatch.models import RecommendationOptions
from pricewatch.status import SearchStatusTracker


@pytest.fixture
def history_collection():
    return MockCollection()


@pytest.fixture
def history_service(history_collection):
    return SearchHistoryService(history_collection, limit=50)


@pytest.fixture
def status_tracker():
    return SearchStatusTracker()


@pytest.fixture
def options():
    return RecommendationOptions(
        weight_price=0.7,
        weight_rating=0.2,
        weight_shipping=0.1,
        trusted_shop_sales_threshold=100,
    )


@pytest.fixture
def shopee_batch():
    return [
        candidate("shopee", "cheap", price=50, shipping=5, rating=4.9, sales=200),
        candidate("shopee", "bad rating", price=60, shipping=5, rating=0, sales=10),
        candidate("shopee", "too cheap", price=5, shipping=1, rating=4.5, sales=30),
    ]


@pytest.fixture
def lazada_batch():
    return [
        candidate("lazada", "mid", price=55, shipping=10, rating=4.6, sales=120),
        candidate("lazada", "premium", price=80, shipping=0, rating=4.95, sales=500),
    ]
