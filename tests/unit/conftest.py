"""
conftest.py - Fixtures for pure-logic unit tests.
"""

import pytest

from marketplace.discovery import DiscoveryQuery
from marketplace.payment_simulator import PaymentSimulator


@pytest.fixture
def h100_query():
    return DiscoveryQuery(gpu_count=8, gpu_type="H100", max_price_per_hour="50", duration_hours=2)


@pytest.fixture
def make_capability():
    def _make(**overrides):
        capability = {
            "id": "cap-a",
            "provider_id": "prov-a",
            "gpu_count": 8,
            "gpu_type": "H100",
            "cpu_cores": 64,
            "memory_gb": 512,
            "price_per_hour": "45.50",
            "available_hours": 100,
            "region": "us-east-1",
            "availability_status": "available",
            "reputation_score": 4.8,
            "created_at": 1000.0,
        }
        capability.update(overrides)
        return capability
    return _make


@pytest.fixture
def simulator():
    return PaymentSimulator(webhook_secret="whsec_unit")
