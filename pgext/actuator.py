"""Reconcile the Postgres cluster of a shoot with its `Extension` resource.

The five lifecycle operations Gardener knows about map onto two primitives:

  * `ensure_present`: reconcile, restore and migrate
  * `ensure_absent`: delete and force delete

Each operation increments the `actuator_operation_total` counter exactly once,
irrespective of its outcome.

"""

import asyncio
import logging
import types
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Mapping

from pgext.cluster import get_context
from pgext.decoder import Decoder
from pgext.errors import (
    AlreadyExistsError,
    CancellationError,
    ConcurrentUpdateError,
    ConfigMissingError,
    ConflictError,
    DeletionError,
    NotFoundError,
    StoreError,
)
from pgext.generate import (
    create_manifest,
    postgresql_key,
    postgresql_manifest,
    upsert_spec,
)
from pgext.metrics import Metrics
from pgext.models import Extension, Operation, Postgresql
from pgext.store import Client, Reader, ResourceKey
from pgext.validation import to_aggregate, validate

# Convenience.
logit = logging.getLogger("app")


@dataclass(frozen=True)
class ActuatorConfig:
    """Everything the actuator depends on.

    The `reader` is only used to look up the environment context whereas the
    `client` manages the Postgres cluster resource. Both are usually the same
    `KubeStore` instance.

    """

    reader: Reader
    client: Client
    decoder: Decoder = field(default_factory=Decoder)
    metrics: Metrics = field(default_factory=Metrics)

    # Provided by gardenlet as extra Helm values during the deployment.
    gardener_version: str = ""
    gardenlet_feature_gates: Mapping[str, bool] = field(default_factory=dict)

    # Number of writes the update path attempts before it gives up.
    max_update_attempts: int = 5

    # Deadline for a single pass in seconds (`None` means no deadline).
    timeout: float | None = None

    def __post_init__(self):
        if self.max_update_attempts < 1:
            raise ValueError("max_update_attempts must be positive")

        # Freeze the feature gates as well.
        gates = types.MappingProxyType(dict(self.gardenlet_feature_gates))
        object.__setattr__(self, "gardenlet_feature_gates", gates)


class Actuator:
    # Name of the actuator, eg when registering a controller for it.
    NAME = "postgres"

    # Type of the extension resources this actuator reconciles.
    EXTENSION_TYPE = "postgres"

    FINALIZER_SUFFIX = "gardener-extension-postgres-operator"

    # The Postgres cluster lives in the shoot namespace of the seed.
    EXTENSION_CLASS = "shoot"

    def __init__(self, cfg: ActuatorConfig):
        self.cfg = cfg

    @classmethod
    def name(cls) -> str:
        return cls.NAME

    @classmethod
    def extension_type(cls) -> str:
        return cls.EXTENSION_TYPE

    @classmethod
    def finalizer_suffix(cls) -> str:
        return cls.FINALIZER_SUFFIX

    @classmethod
    def finalizer(cls) -> str:
        """Return the full finalizer name the controller puts on extensions."""
        return f"extensions.gardener.cloud/{cls.FINALIZER_SUFFIX}"

    @classmethod
    def extension_class(cls) -> str:
        return cls.EXTENSION_CLASS

    # ----------------------------------------------------------------------
    # Lifecycle operations.
    # ----------------------------------------------------------------------

    async def reconcile(self, ex: Extension, timeout: float | None = None) -> None:
        await self.ensure_present(ex, Operation.RECONCILE, timeout)

    async def delete(self, ex: Extension, timeout: float | None = None) -> None:
        await self.ensure_absent(ex, Operation.DELETE, timeout)

    async def force_delete(self, ex: Extension, timeout: float | None = None) -> None:
        """Delete the cluster because Gardener bypassed the graceful teardown."""
        logit.info(
            "shoot has been force-deleted, deleting resources managed by extension",
            self.logging_metadata(ex, Operation.FORCE_DELETE),
        )
        await self.ensure_absent(ex, Operation.FORCE_DELETE, timeout)

    async def restore(self, ex: Extension, timeout: float | None = None) -> None:
        await self.ensure_present(ex, Operation.RESTORE, timeout)

    async def migrate(self, ex: Extension, timeout: float | None = None) -> None:
        await self.ensure_present(ex, Operation.MIGRATE, timeout)

    async def run(
        self, operation: Operation, ex: Extension, timeout: float | None = None
    ) -> None:
        """Dispatch `operation` to the corresponding lifecycle method."""
        handlers = {
            Operation.RECONCILE: self.reconcile,
            Operation.DELETE: self.delete,
            Operation.FORCE_DELETE: self.force_delete,
            Operation.RESTORE: self.restore,
            Operation.MIGRATE: self.migrate,
        }
        await handlers[operation](ex, timeout)

    # ----------------------------------------------------------------------
    # Convergence.
    # ----------------------------------------------------------------------

    def logging_metadata(self, ex: Extension, operation: Operation) -> dict:
        return {
            "component": "actuator",
            "name": ex.metadata.name,
            "namespace": ex.metadata.namespace,
            "operation": operation.value,
        }

    @asynccontextmanager
    async def deadline(self, timeout: float | None) -> AsyncIterator[None]:
        """Abort the pass with a `CancellationError` once `timeout` expires.

        The explicit `timeout` takes precedence over the configured one.

        """
        timeout = self.cfg.timeout if timeout is None else timeout
        scope = asyncio.timeout(timeout)
        try:
            async with scope:
                yield
        except TimeoutError as err:
            if not scope.expired():
                raise
            raise CancellationError(f"deadline of {timeout}s expired") from err

    async def ensure_present(
        self,
        ex: Extension,
        operation: Operation = Operation.RECONCILE,
        timeout: float | None = None,
    ) -> None:
        """Create or update the Postgres cluster of the shoot.

        Nothing happens if the shoot is hibernated. All errors are logged and
        then propagated to the caller.

        """
        meta_log = self.logging_metadata(ex, operation)
        logit.info("reconciling extension", meta_log)

        try:
            async with self.deadline(timeout):
                await self._converge(ex, meta_log)
        except Exception as err:
            logit.error(f"{operation.value} failed", {**meta_log, "reason": str(err)})
            raise
        finally:
            self.cfg.metrics.inc(ex.metadata.namespace, operation)

    async def _converge(self, ex: Extension, meta_log: dict) -> None:
        namespace = ex.metadata.namespace

        # Nothing to do here if the shoot is hibernated at the moment.
        ctx = await get_context(self.cfg.reader, namespace)
        if ctx.suspended:
            logit.info("shoot is hibernated - skipping", meta_log)
            return

        if ex.spec.providerConfig is None:
            raise ConfigMissingError({"namespace": namespace})

        # Decode and validate the provider config.
        cfg = self.cfg.decoder.decode(ex.spec.providerConfig)
        err = to_aggregate(validate(cfg))
        if err is not None:
            raise err

        target = postgresql_manifest(cfg, namespace)
        await self.upsert(postgresql_key(namespace), target, meta_log)

    async def upsert(self, key: ResourceKey, target: Postgresql, meta_log: dict):
        """Create the Postgres cluster or update the existing one.

        Updates are read-modify-write cycles that submit the revision they
        read. If somebody else modified the resource in the meantime, K8s
        rejects the update and we reload the resource and try again until we
        run out of attempts.

        """
        client = self.cfg.client
        attempts = self.cfg.max_update_attempts

        for attempt in range(1, attempts + 1):
            try:
                existing = await client.get(key)
            except NotFoundError:
                existing = None

            try:
                if existing is None:
                    logit.info("creating postgres cluster resource", meta_log)
                    await client.create(key, create_manifest(target))
                else:
                    await client.update(key, upsert_spec(existing, target))
                return
            except (ConflictError, AlreadyExistsError, NotFoundError) as err:
                # A 404 only means we lost a race if the resource existed when
                # we read it. Otherwise its namespace is missing.
                if existing is None and isinstance(err, NotFoundError):
                    raise
                logit.info(
                    "concurrent modification - reloading",
                    {**meta_log, "attempt": attempt, "reason": str(err)},
                )

        raise ConcurrentUpdateError(
            f"giving up on {key} after {attempts} attempts",
            {"namespace": key.namespace, "attempts": attempts},
        )

    async def ensure_absent(
        self,
        ex: Extension,
        operation: Operation = Operation.DELETE,
        timeout: float | None = None,
    ) -> None:
        """Delete the Postgres cluster of the shoot if it exists."""
        meta_log = self.logging_metadata(ex, operation)
        key = postgresql_key(ex.metadata.namespace)

        try:
            logit.info("deleting postgres cluster resource", meta_log)
            async with self.deadline(timeout):
                await self.cfg.client.delete(key)
        except NotFoundError:
            logit.info("postgres cluster resource does not exist", meta_log)
        except StoreError as err:
            logit.error(f"{operation.value} failed", {**meta_log, "reason": str(err)})
            details = {"status": err.status}
            raise DeletionError(f"cannot delete {key}", details) from err
        except CancellationError as err:
            logit.error(f"{operation.value} failed", {**meta_log, "reason": str(err)})
            raise
        finally:
            self.cfg.metrics.inc(ex.metadata.namespace, operation)
