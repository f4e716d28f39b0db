"""Test configuration."""
import os
import random
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import pytest
import pytest_asyncio
from dotenv import load_dotenv

# Set test environment before any imports
os.environ["ENV"] = "test"
os.environ.setdefault("DATA_DIR", str(Path(tempfile.gettempdir()) / "vocabsync-test-data"))
os.environ.setdefault("CLOUD_SYNC_ENABLED", "false")

# Load test environment variables
test_env_path = Path(__file__).parent.parent.parent.parent / ".env.test"
load_dotenv(test_env_path)

# Import after environment setup
from vocabsync.app import LearningEngine
from vocabsync.config import SYNC_COLLECTIONS, ensure_directories
from vocabsync.errors import NetworkError, NotAuthenticated
from vocabsync.services.backup_service import BackupService
from vocabsync.services.local_store import LocalStore
from vocabsync.services.remote_gateway import GatewayResult, RemoteGateway
from vocabsync.services.write_coalescer import WriteCoalescer


class FakeClock:
    """Settable wall clock returning timezone-aware instants."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2024, 3, 10, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Settable monotonic clock for coalescing windows."""

    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class InMemoryGateway(RemoteGateway):
    """Remote store kept in dicts, with switchable failures."""

    def __init__(self, authenticated: bool = True):
        self.authenticated = authenticated
        self.tables: Dict[str, Dict[str, Any]] = {c: {} for c in SYNC_COLLECTIONS}
        self.updated_at: Dict[str, Dict[str, datetime]] = {c: {} for c in SYNC_COLLECTIONS}
        self.server_time = datetime(2024, 3, 1, tzinfo=UTC)
        self.failing: Set[str] = set()
        self.failing_batches: Set[int] = set()
        self.upserts: List[List[str]] = []
        self.deleted: List[tuple] = []
        self.blacklisted: Set[str] = set()
        self.fetch_calls: List[tuple] = []

    @property
    def is_authenticated(self) -> bool:
        return self.authenticated

    def seed(self, collection: str, record: Any) -> datetime:
        """Store a record as if another device had written it."""
        self.server_time += timedelta(seconds=1)
        self.tables[collection][record.word] = record.copy()
        self.updated_at[collection][record.word] = self.server_time
        return self.server_time

    def _check(self, operation: str) -> Optional[GatewayResult]:
        if not self.authenticated:
            return GatewayResult.failed(NotAuthenticated("Not logged in"))
        if operation in self.failing:
            return GatewayResult.failed(NetworkError(f"{operation} unavailable"))
        return None

    async def sign_in(self, email: str, password: str) -> GatewayResult:
        if "sign_in" in self.failing:
            return GatewayResult.failed(NotAuthenticated("Invalid login credentials"))
        self.authenticated = True
        return GatewayResult.ok("user-1")

    async def sign_out(self) -> GatewayResult:
        self.authenticated = False
        return GatewayResult.ok()

    async def fetch_all(self, collection: str) -> GatewayResult:
        self.fetch_calls.append((collection, None))
        return self._check("fetch") or self._select(collection, None)

    async def fetch_since(self, collection: str, checkpoint: datetime) -> GatewayResult:
        self.fetch_calls.append((collection, checkpoint))
        return self._check("fetch") or self._select(collection, checkpoint)

    async def fetch_keys(self, collection: str, keys: List[str]) -> GatewayResult:
        failure = self._check("fetch")
        if failure:
            return failure
        selected = self._select(collection, None)
        return GatewayResult.ok({k: v for k, v in selected.data.items() if k in keys})

    def _select(self, collection: str, since: Optional[datetime]) -> GatewayResult:
        data = {}
        latest = None
        for word, record in self.tables[collection].items():
            if word in self.blacklisted:
                continue
            updated_at = self.updated_at[collection][word]
            if since is not None and updated_at <= since:
                continue
            data[word] = record.copy()
            latest = updated_at if latest is None else max(latest, updated_at)
        return GatewayResult.ok(data, latest)

    async def upsert_batch(self, collection: str, records: List[Any]) -> GatewayResult:
        failure = self._check("upsert")
        batch_index = len(self.upserts)
        self.upserts.append([record.word for record in records])
        if failure:
            return failure
        if batch_index in self.failing_batches:
            return GatewayResult.failed(NetworkError("batch rejected"))
        for record in records:
            self.seed(collection, record)
        return GatewayResult.ok(len(records))

    async def delete(self, collection: str, key: str) -> GatewayResult:
        failure = self._check("delete")
        if failure:
            return failure
        self.deleted.append((collection, key))
        self.tables[collection].pop(key, None)
        self.updated_at[collection].pop(key, None)
        return GatewayResult.ok()

    async def blacklist(self, word: str) -> GatewayResult:
        failure = self._check("delete")
        if failure:
            return failure
        self.blacklisted.add(word)
        return GatewayResult.ok()

    async def count(self, collection: str) -> GatewayResult:
        failure = self._check("count")
        if failure:
            return failure
        return GatewayResult.ok(len([w for w in self.tables[collection] if w not in self.blacklisted]))


class CoalescerHarness:
    """Write coalescer wired to owner services, recording cloud pushes."""

    def __init__(self, monotonic: FakeMonotonic):
        self.owners: Dict[str, Any] = {}
        self.pushed: List[tuple] = []
        self.push_allowed = True
        self.coalescer = WriteCoalescer(
            self.persist,
            self.push,
            lambda: self.push_allowed,
            local_delay=1.0,
            cloud_delay=2.0,
            tick_interval=3600,
            clock=monotonic,
        )

    async def persist(self, keys):
        for collection, key in keys:
            await self.owners[collection].persist(key)

    async def push(self, keys):
        self.pushed.extend(keys)


@pytest.fixture(autouse=True)
def setup_test_environment():
    """Set up test environment before each test."""
    # Ensure test directories exist
    ensure_directories()

    yield


@pytest.fixture
def clock() -> FakeClock:
    """Create a settable wall clock."""
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    """Create a settable monotonic clock."""
    return FakeMonotonic()


@pytest.fixture
def gateway() -> InMemoryGateway:
    """Create an authenticated in-memory remote store."""
    return InMemoryGateway()


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    """SQLite database URL in the test's temporary directory."""
    return f"sqlite:///{tmp_path / 'vocabsync.db'}"


@pytest_asyncio.fixture
async def store(db_url: str):
    """Create an initialized local store."""
    local_store = LocalStore(db_url)
    await local_store.init()
    yield local_store
    await local_store.close()


@pytest.fixture
def make_engine(tmp_path: Path, db_url: str, clock: FakeClock, monotonic: FakeMonotonic, gateway: InMemoryGateway):
    """Factory for engines sharing the test's store file, clocks and gateway."""

    def factory(**kwargs) -> LearningEngine:
        options = dict(
            store=LocalStore(db_url),
            gateway=gateway,
            backup=BackupService(tmp_path / "backup.json", clock=clock),
            clock=clock,
            coalescer_clock=monotonic,
            local_delay=1.0,
            cloud_delay=2.0,
            tick_interval=3600,
            rng=random.Random(7),
        )
        options.update(kwargs)
        return LearningEngine(**options)

    return factory


@pytest_asyncio.fixture
async def engine(make_engine):
    """Create a started engine; its ticker never fires on its own."""
    learning_engine = make_engine()
    await learning_engine.start()
    yield learning_engine
    await learning_engine.stop()


@pytest.fixture
def harness(monotonic: FakeMonotonic) -> CoalescerHarness:
    """Create a coalescer harness; tests register owners on it."""
    return CoalescerHarness(monotonic)
