# tests/orchestration/conftest.py
import pytest

from orchestration_fakes import MemoryRecommendationStore
from repertoire_builder.core.position_service import ChessPositionService
from repertoire_builder.services.recommendation_cache import RecommendationCache


@pytest.fixture
def positions():
    return ChessPositionService()


@pytest.fixture
def memory_store():
    return MemoryRecommendationStore()


@pytest.fixture
def cache(memory_store):
    return RecommendationCache(memory_store)
