# tests/conftest.py
import sys
import asyncio

if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from dotenv import load_dotenv
from faker import Faker

# --- Ensure project root is importable
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# --- Load env once for all tests
load_dotenv(dotenv_path=ROOT / ".env", override=False)

from marketops.data.inmemory_store import InMemoryStore  # noqa: E402
from marketops.data.models import to_iso  # noqa: E402
from marketops.services import Services, configure_services, reset_services  # noqa: E402
from tests.fake_providers import FakeDrafter, RecordingExecutor, RecordingTrigger  # noqa: E402

fake = Faker()

# Wednesday 2024-06-12 15:00 UTC
FIXED_NOW = datetime(2024, 6, 12, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


def seed_world(store: InMemoryStore) -> SimpleNamespace:
    """One organization -> product -> active campaign, plus an approval-free and an approval-gated connector."""
    org = store.add_organization(id="org-1", name=fake.company(), settings={"brand": "acme"})
    product = store.add_product(
        id="prod-1",
        organization_id=org["id"],
        name="Acme Widget",
        description=fake.sentence(),
        verified_claims={"claims": ["Saves 10 hours a week"]},
    )
    campaign = store.add_campaign(id="camp-1", product_id=product["id"], name="Launch", goal="signups")
    auto = store.add_connector(
        id="conn-auto", organization_id=org["id"], type="email_resend", approval_required=False
    )
    gated = store.add_connector(
        id="conn-gated", organization_id=org["id"], type="social_twitter", approval_required=True
    )
    return SimpleNamespace(store=store, org=org, product=product, campaign=campaign, auto=auto, gated=gated)


@pytest.fixture
def world(store: InMemoryStore) -> SimpleNamespace:
    return seed_world(store)


@pytest.fixture
def services(store: InMemoryStore):
    svc = configure_services(
        Services(
            store=store,
            drafter=FakeDrafter(),
            executor=RecordingExecutor(),
            trigger=RecordingTrigger(),
            approval_timeout_seconds=3600,
            metrics_delay_seconds=0,
        )
    )
    yield svc
    reset_services()


def add_policy(store: InMemoryStore, kind: str, rule: dict, *, severity: str = "block", name: str = "", **fields):
    return store.add_policy(
        organization_id=fields.pop("organization_id", "org-1"),
        type=kind,
        severity=severity,
        name=name or kind.replace("_", " ").title(),
        rule=rule,
        **fields,
    )


def add_completed_tasks(store: InMemoryStore, n: int, *, at: datetime, **fields):
    for _ in range(n):
        store.add_task(
            campaign_id=fields.get("campaign_id", "camp-1"),
            type=fields.get("type", "email_single"),
            title=fake.sentence(nb_words=4),
            status=fields.get("status", "completed"),
            connector_id=fields.get("connector_id"),
            created_at=to_iso(at),
            completed_at=to_iso(at),
            execution_result=fields.get("execution_result"),
        )


def hours_ago(base: datetime, hours: float) -> datetime:
    return base - timedelta(hours=hours)
