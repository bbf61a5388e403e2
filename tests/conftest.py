"""
Pytest configuration and fixtures for wallet query tests.
"""

import hashlib
import re
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np
import pytest
import yaml

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from wallet_query.core.dispatcher import InlineDispatcher
from wallet_query.core.entity_extractor import EntityExtractor
from wallet_query.core.pattern_store import InMemoryPatternStore
from wallet_query.core.query_config import QueryConfig
from wallet_query.core.query_service import QueryService


class BagOfWordsEmbedder:
    """
    Deterministic embedder for tests: hashed bag of words, L2-normalized.

    Texts with the same words (ignoring case and punctuation) embed to the
    same vector; cosine similarity drops with every differing word.
    """

    def __init__(self, dimensions: int = 256):
        self.dimensions = dimensions
        self.calls = 0

    def embed(self, text: str) -> list[float]:
        self.calls += 1
        vector = np.zeros(self.dimensions)
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dimensions
            vector[bucket] += 1.0
        norm = np.linalg.norm(vector)
        if norm:
            vector = vector / norm
        return vector.tolist()


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


WALLET_CARDS = [
    # Chase (8)
    {"id": "c1", "issuer": "Chase", "card_network": "Visa", "card_name": "Sapphire Preferred",
     "current_balance": 1200, "apr": 24.99, "credit_limit": 5000, "annual_fee": 95,
     "payment_due_date": "2026-03-15", "reward_structure": {"travel": "2x points"}},
    {"id": "c2", "issuer": "Chase", "card_network": "Visa", "card_name": "Freedom Unlimited",
     "current_balance": 6200, "apr": 19.99, "credit_limit": 10000, "annual_fee": 0,
     "payment_due_date": "2026-03-20", "reward_structure": {"everything": "1.5% cash back"}},
    {"id": "c3", "issuer": "Chase", "card_network": "Mastercard", "card_name": "Freedom Flex",
     "current_balance": 300, "apr": 27.5, "credit_limit": 3000, "annual_fee": 0,
     "payment_due_date": "2026-03-05"},
    {"id": "c4", "issuer": "Chase", "card_network": "Visa", "card_name": "Sapphire Reserve",
     "current_balance": 0, "apr": 21.0, "credit_limit": 8000, "annual_fee": 550,
     "payment_due_date": "2026-03-28"},
    {"id": "c5", "issuer": "Chase", "card_network": "Visa", "card_name": "Ink Business",
     "current_balance": 7500, "apr": 26.99, "credit_limit": 12000, "annual_fee": 95,
     "card_type": "Business", "payment_due_date": "2026-03-10"},
    {"id": "c6", "issuer": "Chase", "card_network": "Mastercard", "card_name": "Slate",
     "current_balance": 2500, "apr": 18.0, "credit_limit": 6000, "annual_fee": 0,
     "payment_due_date": "2026-03-25"},
    {"id": "c7", "issuer": "Chase", "card_network": "Visa", "card_name": "Amazon Prime",
     "current_balance": None, "apr": 22.0, "credit_limit": 4000, "annual_fee": 0,
     "payment_due_date": "2026-04-01"},
    {"id": "c8", "issuer": "Chase", "card_network": "Visa", "card_name": "United Explorer",
     "current_balance": 450, "apr": 29.99, "credit_limit": 2000, "annual_fee": 0,
     "payment_due_date": "2026-03-18"},
    # Citi (6)
    {"id": "t1", "issuer": "Citi", "card_network": "Mastercard", "card_name": "Double Cash",
     "current_balance": 5400, "apr": 23.0, "credit_limit": 9000, "annual_fee": 0,
     "payment_due_date": "2026-03-12"},
    {"id": "t2", "issuer": "Citi", "card_network": "Visa", "card_name": "Premier",
     "current_balance": 880, "apr": 16.5, "credit_limit": 7000, "annual_fee": 95,
     "payment_due_date": "2026-03-22"},
    {"id": "t3", "issuer": "Citi", "card_network": "Mastercard", "card_name": "Custom Cash",
     "current_balance": 0, "apr": 25.0, "credit_limit": 5000, "annual_fee": 0,
     "payment_due_date": "2026-03-08"},
    {"id": "t4", "issuer": "Citi", "card_network": "Visa", "card_name": "Diamond Preferred",
     "current_balance": 3100, "apr": 20.0, "credit_limit": 6500, "annual_fee": 0,
     "payment_due_date": "2026-03-30"},
    {"id": "t5", "issuer": "Citi", "card_network": "Mastercard", "card_name": "AAdvantage",
     "current_balance": 9000, "apr": 28.0, "credit_limit": 15000, "annual_fee": 95,
     "payment_due_date": "2026-03-14"},
    {"id": "t6", "issuer": "Citi", "card_network": "Visa", "card_name": "Rewards+",
     "current_balance": "n/a", "apr": 24.0, "credit_limit": 5000, "annual_fee": 0,
     "payment_due_date": "2026-03-27"},
]


@pytest.fixture(scope="session")
def project_root():
    """Return project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def wallet():
    """14 cards: Chase 8 / Citi 6; one missing and one non-numeric balance."""
    return [dict(card) for card in WALLET_CARDS]


@pytest.fixture
def extractor():
    return EntityExtractor(reference_year=2026)


@pytest.fixture
def embedder():
    return BagOfWordsEmbedder()


@pytest.fixture
def pattern_store():
    return InMemoryPatternStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def query_config():
    return QueryConfig()


@pytest.fixture
def service(query_config, pattern_store, embedder, clock):
    """QueryService wired with in-process collaborators and inline background work."""
    svc = QueryService(
        config=query_config,
        pattern_store=pattern_store,
        embedder=embedder,
        dispatcher=InlineDispatcher(),
        extractor=EntityExtractor(reference_year=2026),
        clock=clock,
    )
    yield svc
    svc.close()


@pytest.fixture
def temp_config_file(tmp_path):
    """Write a wallet_query.yaml with a few overridden keys."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_path = config_dir / "wallet_query.yaml"
    config_path.write_text(
        yaml.dump(
            {
                "cache_similarity_threshold": 0.9,
                "context_merge_mode": "follow_up",
                "background_workers": 4,
            }
        )
    )
    return config_path
