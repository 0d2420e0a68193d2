import copy
from pathlib import Path
from typing import Dict, List, Tuple

import pytest
import yaml
from httpx import AsyncClient
from square.dtypes import K8sConfig

import pgext.logstreams
from pgext.actuator import Actuator, ActuatorConfig
from pgext.cluster import FORCE_DELETION_ANNOTATION, cluster_key
from pgext.errors import AlreadyExistsError, ConflictError, NotFoundError, StoreError
from pgext.metrics import Metrics
from pgext.models import Extension, ServerConfig
from pgext.store import ResourceKey, revision


def pytest_configure(*args, **kwargs):
    """Pytest calls this hook on startup."""
    # Set log level to DEBUG for all unit tests.
    pgext.logstreams.setup("DEBUG")


def get_server_config():
    return ServerConfig(
        kubeconfig=Path("/tmp/kind-kubeconf.yaml"),
        kubecontext="kind-kind",
        host="0.0.0.0",
        port=5001,
        loglevel="info",
    )


def load_specimen(name: str) -> dict:
    return yaml.safe_load(Path(f"tests/support/{name}").read_text())


def make_extension(namespace: str = "shoot-a", **spec) -> Extension:
    """Return the specimen extension in `namespace` with a modified config.

    Use `providerConfig=None` to remove the provider config altogether.

    """
    manifest = load_specimen("extension.yaml")
    manifest["metadata"]["namespace"] = namespace
    manifest["spec"].update(spec)
    return Extension.model_validate(manifest)


def make_cluster(
    namespace: str = "shoot-a", hibernated: bool = False, force: bool = False
) -> dict:
    manifest = load_specimen("cluster.yaml")
    manifest["metadata"]["name"] = namespace

    shoot = manifest["spec"]["shoot"]
    shoot["spec"]["hibernation"]["enabled"] = hibernated
    if force:
        shoot["metadata"]["annotations"][FORCE_DELETION_ANNOTATION] = "true"
    return manifest


class FakeStore:
    """In-memory store with K8s style revisions.

    Tests can inject failures:

      * `conflicts`: number of upcoming updates that lose the race against a
        concurrent writer.
      * `errors`: `{method: error}` to raise on every call of `method`.

    """

    def __init__(self):
        self.objects: Dict[ResourceKey, dict] = {}
        self.calls: List[Tuple[str, ResourceKey]] = []
        self.conflicts = 0
        self.errors: Dict[str, StoreError] = {}
        self.last_rv = 0

    def next_revision(self) -> str:
        self.last_rv += 1
        return str(self.last_rv)

    def seed(self, key: ResourceKey, manifest: dict) -> None:
        manifest = copy.deepcopy(manifest)
        manifest.setdefault("metadata", {})["resourceVersion"] = self.next_revision()
        self.objects[key] = manifest

    def writes(self) -> List[str]:
        return [method for method, _ in self.calls if method != "get"]

    def _record(self, method: str, key: ResourceKey) -> None:
        self.calls.append((method, key))
        if method in self.errors:
            raise self.errors[method]

    async def get(self, key: ResourceKey) -> dict:
        self._record("get", key)
        if key not in self.objects:
            raise NotFoundError(f"{key} not found", 404)
        return copy.deepcopy(self.objects[key])

    async def create(self, key: ResourceKey, manifest: dict) -> dict:
        self._record("create", key)
        if key in self.objects:
            raise AlreadyExistsError(f"{key} already exists", 409)
        self.seed(key, manifest)
        return copy.deepcopy(self.objects[key])

    async def update(self, key: ResourceKey, manifest: dict) -> dict:
        self._record("update", key)
        if key not in self.objects:
            raise NotFoundError(f"{key} not found", 404)

        # Simulate another writer that sneaked in before us.
        if self.conflicts > 0:
            self.conflicts -= 1
            self.seed(key, self.objects[key])

        if revision(manifest) != revision(self.objects[key]):
            raise ConflictError(f"{key} was modified concurrently", 409)
        self.seed(key, manifest)
        return copy.deepcopy(self.objects[key])

    async def delete(self, key: ResourceKey) -> None:
        self._record("delete", key)
        if key not in self.objects:
            raise NotFoundError(f"{key} not found", 404)
        del self.objects[key]


@pytest.fixture
async def k8scfg(respx_mock):
    """Return an async test client."""
    async with AsyncClient(base_url="https:") as client:
        yield K8sConfig(client=client)


@pytest.fixture
def store():
    """Return an in-memory store that knows the cluster of `shoot-a`."""
    fake = FakeStore()
    fake.seed(cluster_key("shoot-a"), make_cluster("shoot-a"))
    return fake


@pytest.fixture
def metrics():
    return Metrics()


@pytest.fixture
def actuator(store: FakeStore, metrics: Metrics):
    cfg = ActuatorConfig(reader=store, client=store, metrics=metrics)
    return Actuator(cfg)
