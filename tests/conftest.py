import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import ledgerfold`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless LEDGERFOLD_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items) -> None:
    run_slow = _env_flag('LEDGERFOLD_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set LEDGERFOLD_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def fresh_config():
    """Every test starts from default configuration."""
    from ledgerfold.config import ConfigManager

    ConfigManager.reset()
    yield
    ConfigManager.reset()


@pytest.fixture
def signing_key():
    from ledgerfold.proofs import SigningKey
    return SigningKey.generate("test-aggregator")


@pytest.fixture
def producer_key():
    from ledgerfold.proofs import SigningKey
    return SigningKey.generate("test-producer")


@pytest.fixture
def registry(producer_key):
    from ledgerfold.proofs import KeyRegistry
    reg = KeyRegistry()
    reg.register_signing_key(producer_key)
    return reg


@pytest.fixture
def backend(signing_key, registry):
    from ledgerfold.proofs import Ed25519ProofBackend
    return Ed25519ProofBackend(signing_key, registry)


def make_item(i: int, owner: str = "alice"):
    from ledgerfold.items import Item
    return Item.create(f"payload-{i}".encode("utf-8"), owner=owner, tags=["test"])


def make_leaf(i: int):
    return make_item(i).to_leaf()


@pytest.fixture
def tree_factory():
    """Build a CommitmentTree holding leaves 0..n-1."""
    from ledgerfold.tree import CommitmentTree

    def build(n: int, max_depth: int = 20):
        return CommitmentTree.from_leaves([make_leaf(i) for i in range(n)], max_depth=max_depth)

    return build


@pytest.fixture
def no_sleep_retry():
    """Anchor retry policy that backs off without sleeping."""
    from ledgerfold.errors import ChainTampered, ProofInvalid
    from ledgerfold.resilience import RetryPolicy

    def build(max_attempts: int = 3):
        return RetryPolicy(
            max_attempts=max_attempts,
            base_delay_seconds=0.01,
            non_retryable_exceptions=(ProofInvalid, ChainTampered),
            sleep=lambda _: None,
        )

    return build


@pytest.fixture
def item_factory():
    return make_item


@pytest.fixture
def leaf_factory():
    return make_leaf
