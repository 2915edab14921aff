"""
Pytest configuration for signal intelligence tests.

Test Tier System:
- fast (default): Pure unit tests, all I/O mocked
- medium: API TestClient and multi-component pipeline runs on in-memory storage
- slow: External APIs (real embedding provider, real database)

Run tiers:
- pytest                          # Fast + medium (default)
- pytest -m fast                  # Fast only
- pytest -m slow                  # Slow only
- pytest --override-ini="addopts=" -v   # Full suite (all tiers)

Note: Unmarked tests are auto-assigned to 'fast' tier. To add a new test:
- No marker needed for fast (unit) tests
- Add @pytest.mark.medium for API TestClient tests
- Add @pytest.mark.slow for external API / database tests
- Tests marked @pytest.mark.integration (without tier) default to 'medium'

API Key Safety:
- Fast/medium tests force-set a fake OPENAI_API_KEY to prevent accidental API calls
- Only slow tests (and full suite) preserve real API keys from environment
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from signal_intel.db.hotspot_storage import InMemoryHotspotStorage  # noqa: E402
from signal_intel.db.models import Signal  # noqa: E402
from signal_intel.services.embedding_service import HashedEmbeddingProvider  # noqa: E402


# =============================================================================
# Tier Auto-Assignment
# =============================================================================

def pytest_collection_modifyitems(config, items):
    """
    Automatically assign tier markers to unmarked tests.

    Tests are fast by default unless explicitly marked as medium or slow.
    Tests marked with @pytest.mark.integration (but no tier) are assigned
    to the 'medium' tier.
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

        if list(item.iter_markers(name='integration')):
            item.add_marker(pytest.mark.medium)
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


# =============================================================================
# Session-Scoped Fixtures
# =============================================================================

@pytest.fixture(scope="session")
def project_root():
    """Return project root path (session-scoped for efficiency)."""
    return PROJECT_ROOT


# =============================================================================
# Signal Fixtures
# =============================================================================

NOW = datetime(2024, 6, 10, 12, 0, tzinfo=timezone.utc)

# Ten PROCESS signals: approval / submittal workflow delays on the critical path
PROCESS_TEXTS = [
    ("Approval delay on submittal review cycle", "The approval workflow is a bottleneck for the critical path deadline."),
    ("Approval delay blocking submittal handoff", "Submittal approval workflow stuck, critical path deadline at risk."),
    ("Approval delay in RFI workflow", "RFI approval workflow bottleneck pushes the critical path deadline."),
    ("Approval delay for change order submittal", "Change order approval workflow is a bottleneck on the critical path."),
    ("Approval delay again on submittal sign-off", "Sign-off workflow bottleneck, submittal approval misses the deadline."),
    ("Approval delay slows deliverable handoff", "Deliverable handoff waits on approval workflow, critical path deadline slipping."),
    ("Approval delay in review cycle for submittal", "Review cycle approval workflow bottleneck on the critical path."),
    ("Approval delay holds phase gate", "Phase gate approval workflow bottleneck, deadline on critical path."),
    ("Approval delay on RFI submittal workflow", "Submittal and RFI approval workflow bottleneck, critical path deadline."),
    ("Approval delay on scope change order", "Scope change order approval workflow bottleneck before the deadline."),
]

TECHNOLOGY_TEXTS = [
    ("Software crash in Revit model", "Revit software crash corrupts the BIM model on the server."),
    ("Software crash on CAD network", "AutoCAD software crash when the network server drops the license."),
]


def make_signal(
    signal_id,
    title="",
    description="",
    severity="MEDIUM",
    created_at=None,
    **kwargs,
):
    """Build a Signal with test defaults."""
    return Signal(
        id=signal_id,
        title=title,
        description=description,
        severity=severity,
        created_at=created_at or NOW - timedelta(days=1),
        **kwargs,
    )


def scenario_a_signals():
    """10 high-severity PROCESS signals + 2 TECHNOLOGY signals."""
    signals = [
        make_signal(f"p{i:02d}", title, description, severity="HIGH", department="Project Management")
        for i, (title, description) in enumerate(PROCESS_TEXTS)
    ]
    signals += [
        make_signal(f"t{i:02d}", title, description, severity="MEDIUM")
        for i, (title, description) in enumerate(TECHNOLOGY_TEXTS)
    ]
    return signals


# Everyday wording: one to three rule terms per signal, often inflected
FIELD_REPORT_TEXTS = [
    ("PROCESS", "Permit Delays - Multiple Projects Impacted",
     "City permitting office backed up. Typical two-week turnaround now six to eight weeks, "
     "delaying starts on three major projects."),
    ("PROCESS", "Change Order Approvals Taking Three Weeks",
     "Builders waiting on change orders for weeks. Routing through accounting and legal adds "
     "days to every request."),
    ("PROCESS", "Design Package Approval Bottleneck",
     "Homebuilder now takes three to four weeks to approve design packages that used to take "
     "one week. Their new approval path needs regional manager sign-off."),
    ("PROCESS", "RFI Turnaround Slipping",
     "RFI answers averaging five days against a two-day contractual target. Builders raised it "
     "at the monthly sync."),
    ("PROCESS", "Submittal Workflow Stalled on Heritage Hills",
     "Framing submittals sit for days waiting on a second signature. The handoff between design "
     "and field teams has nobody assigned."),
    ("PROCESS", "Milestone Dates Slipping Across Phases",
     "Three communities missed their framing milestone this quarter. Each slip pushes the "
     "critical path and the closing deadline."),
    ("PROCESS", "Scheduling Conflicts Delay Foundation Pours",
     "Concrete pours keep moving because trade scheduling is set a week at a time with no "
     "shared timeline."),
    ("PROCESS", "Scope Creep on Custom Home Plans",
     "Buyers add rooms after plans are final, and each addition restarts the approval sequence "
     "for the whole package."),
    ("PROCESS", "Dependency on Structural Calculations Holds Framing",
     "Framing cannot start until structural calculations come back, and that dependency now "
     "adds ten days to every lot."),
    ("RESOURCE", "Drafting Team Over Capacity",
     "Drafting team running at 120 percent of capacity this quarter with overtime every week."),
    ("RESOURCE", "Field Crew Shortage",
     "Lost nine of twenty-two field staff this year; remaining crews carry a double workload."),
    ("RESOURCE", "Estimating Headcount Too Thin",
     "Two estimators cover forty active bids, so we need more people before spring."),
]


def field_report_signals():
    """Twelve high-severity signals written the way project managers report them."""
    return [
        make_signal(f"f{i:02d}", title, description, severity="HIGH", department="Project Management")
        for i, (_, title, description) in enumerate(FIELD_REPORT_TEXTS)
    ]


@pytest.fixture
def signal_factory():
    """Factory for Signal objects."""
    return make_signal


@pytest.fixture
def process_signals():
    return scenario_a_signals()


@pytest.fixture
def hashed_provider():
    """Deterministic embedding provider (no network)."""
    return HashedEmbeddingProvider(dimensions=64)


@pytest.fixture
def memory_storage(process_signals):
    """In-memory storage preloaded with the scenario A signals."""
    return InMemoryHotspotStorage(process_signals)
