"""Feed the events of the extension watch into the actuator.

The controller decides which lifecycle operation an event calls for, runs it
and maintains the finalizer and the operation annotation of the extension.
Events for the same extension are processed one after the other whereas
events for different extensions run concurrently.

"""

import asyncio
import logging
import random
from typing import Dict, List, Set

import pydantic
from square.dtypes import K8sConfig

import pgext.k8s
from pgext.actuator import Actuator
from pgext.cluster import get_context
from pgext.errors import ActuatorError, ContextLookupError, StoreError
from pgext.models import EnvironmentContext, Extension, Operation
from pgext.watch import EXTENSIONS_PATH, ExtensionWatch

# Gardener requests restore and migrate operations with this annotation.
OPERATION_ANNOTATION = "gardener.cloud/operation"

# Convenience.
logit = logging.getLogger("app")


def extension_url(ex: Extension) -> str:
    meta = ex.metadata
    prefix = EXTENSIONS_PATH.rpartition("/")[0]
    return f"{prefix}/namespaces/{meta.namespace}/extensions/{meta.name}"


def select_operation(ex: Extension, ctx: EnvironmentContext | None) -> Operation:
    """Return the lifecycle operation the current state of `ex` calls for."""
    if ex.is_deleted():
        force = ctx is not None and ctx.force_deletion
        return Operation.FORCE_DELETE if force else Operation.DELETE

    annotation = ex.metadata.annotations.get(OPERATION_ANNOTATION, "")
    if annotation == "restore":
        return Operation.RESTORE
    if annotation == "migrate":
        return Operation.MIGRATE
    return Operation.RECONCILE


def add_finalizer_patch(ex: Extension, finalizer: str) -> List[dict]:
    if len(ex.metadata.finalizers) == 0:
        return [{"op": "add", "path": "/metadata/finalizers", "value": [finalizer]}]
    return [{"op": "add", "path": "/metadata/finalizers/-", "value": finalizer}]


def remove_finalizer_patch(ex: Extension, finalizer: str) -> List[dict]:
    idx = ex.metadata.finalizers.index(finalizer)
    path = f"/metadata/finalizers/{idx}"

    # The `test` ensures we never remove somebody else's finalizer.
    return [
        {"op": "test", "path": path, "value": finalizer},
        {"op": "remove", "path": path},
    ]


def remove_annotation_patch(name: str) -> List[dict]:
    # JSON pointers escape `/` as `~1`.
    path = "/metadata/annotations/" + name.replace("~", "~0").replace("/", "~1")
    return [{"op": "remove", "path": path}]


class Controller:
    def __init__(
        self,
        k8scfg: K8sConfig,
        actuator: Actuator,
        requeue_delay: float = 30,
    ):
        self.k8scfg = k8scfg
        self.actuator = actuator
        self.requeue_delay = requeue_delay

        # One lock per extension UID to serialise its events.
        self.locks: Dict[str, asyncio.Lock] = {}
        self.tasks: Set[asyncio.Task] = set()

    async def lookup_context(self, ex: Extension) -> EnvironmentContext | None:
        try:
            return await get_context(self.actuator.cfg.reader, ex.metadata.namespace)
        except ContextLookupError:
            return None

    async def patch(self, ex: Extension, payload: List[dict]) -> bool:
        _, err = await pgext.k8s.patch(self.k8scfg, extension_url(ex), payload)
        return err

    async def handle(self, data: dict) -> bool:
        """Run the lifecycle operation for a single watch event.

        Return `True` if the operation failed and should be retried later.

        """
        try:
            evt, manifest = data["type"], data["object"]
            ex = Extension.model_validate(manifest)
        except (KeyError, pydantic.ValidationError):
            logit.error("invalid watch event", {"event": data})
            return False

        # The finalizer guarantees that we have already processed a DELETED
        # extension. Extensions of other types belong to other controllers.
        if evt == "DELETED" or ex.spec.type != self.actuator.extension_type():
            return False

        finalizer = self.actuator.finalizer()
        meta_log = {"name": ex.metadata.name, "namespace": ex.metadata.namespace}

        if ex.is_deleted():
            # Somebody else already cleaned up (or we never owned it).
            if finalizer not in ex.metadata.finalizers:
                return False
            op = select_operation(ex, await self.lookup_context(ex))
        else:
            op = select_operation(ex, None)
            if finalizer not in ex.metadata.finalizers:
                if await self.patch(ex, add_finalizer_patch(ex, finalizer)):
                    return True

        meta_log["operation"] = op.value
        try:
            await self.actuator.run(op, ex)
        except (ActuatorError, StoreError) as err:
            retryable = getattr(err, "retryable", True)
            logit.error("operation failed", {**meta_log, "retryable": retryable})
            return retryable
        except Exception:
            logit.exception("unexpected error", meta_log)
            return True

        # Release the extension or acknowledge the requested operation.
        if op in (Operation.DELETE, Operation.FORCE_DELETE):
            return await self.patch(ex, remove_finalizer_patch(ex, finalizer))
        if op in (Operation.RESTORE, Operation.MIGRATE):
            return await self.patch(ex, remove_annotation_patch(OPERATION_ANNOTATION))
        return False

    async def handle_serialised(self, data: dict) -> None:
        uid = data.get("object", {}).get("metadata", {}).get("uid", "")
        lock = self.locks.setdefault(uid, asyncio.Lock())
        async with lock:
            retry = await self.handle(data)

        if data.get("type") == "DELETED":
            self.locks.pop(uid, None)
            return

        if retry:
            await asyncio.sleep(self.requeue_delay + random.uniform(-2, 2))

            # Retry with the latest version of the extension unless it is gone.
            url = extension_url(Extension.model_validate(data["object"]))
            manifest, err = await pgext.k8s.get(self.k8scfg, url)
            if not err:
                self.submit({"type": "MODIFIED", "object": manifest})

    def submit(self, data: dict) -> None:
        task = asyncio.create_task(self.handle_serialised(data))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    async def run(self, watch: ExtensionWatch) -> None:
        """Process the events from `watch` until the watch stops."""
        try:
            async for data in watch:  # codecov-skip
                self.submit(data)
        finally:
            for task in list(self.tasks):
                task.cancel()
