"""
Pytest configuration for Omnisearch tests.

Test Tier System:
- fast (default): Pure unit tests, all I/O mocked
- medium: API TestClient tests
- slow: Real OpenAI / Google / PostgreSQL calls

Run tiers:
- pytest                          # Fast + medium (default addopts)
- pytest -m fast                  # Fast only
- pytest -m slow                  # Slow only
- pytest --override-ini="addopts=" -v   # Full suite (all tiers)

Note: Unmarked tests are auto-assigned to 'fast' tier. To add a new test:
- No marker needed for fast (unit) tests
- Add @pytest.mark.medium for API TestClient tests
- Add @pytest.mark.slow for external API tests

API Key Safety:
- Fast/medium tests force-set a fake OPENAI_API_KEY to prevent accidental API calls
- Only slow tests (and full suite) preserve real API keys from environment
"""

import os
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent


# =============================================================================
# Tier Auto-Assignment
# =============================================================================

def pytest_collection_modifyitems(config, items):
    """
    Automatically assign tier markers to unmarked tests.

    Tests are fast by default unless explicitly marked as medium or slow.
    """
    for item in items:
        has_tier = (
            list(item.iter_markers(name='fast')) or
            list(item.iter_markers(name='medium')) or
            list(item.iter_markers(name='slow'))
        )
        if has_tier:
            continue

        if list(item.iter_markers(name='skip')):
            continue

        item.add_marker(pytest.mark.fast)


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Force a fake OpenAI key unless slow tests are selected."""
    markexpr = getattr(config.option, 'markexpr', '') or ''

    includes_slow_tests = (
        not markexpr or
        (
            'slow' in markexpr and
            'not slow' not in markexpr
        )
    )

    if includes_slow_tests:
        os.environ.setdefault("OPENAI_API_KEY", "sk-test-fake-key-for-testing")
    else:
        os.environ["OPENAI_API_KEY"] = "sk-test-fake-key-for-testing"

    # Never pick up a developer's Redis in unit tests
    os.environ.pop("REDIS_URL", None)


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture(scope="session")
def project_root():
    """Return project root path (session-scoped for efficiency)."""
    return PROJECT_ROOT


class FakeClock:
    """Manually advanced monotonic clock for TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
