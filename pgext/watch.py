"""Stream the `Extension` resources of the seed as an async iterator.

`ExtensionCache` mirrors the postgres extensions we have seen so far and turns
raw K8s events, or a complete listing, into the events the controller should
see. It performs no I/O.

`ExtensionWatch` runs a background task that lists the extensions once and
then follows the K8s watch stream from the listed resource version onwards.
Whenever the stream breaks, or K8s reports 410 (Gone), it lists again and the
cache synthesises the events that were lost in the meantime.

"""

import asyncio
import json
import logging
import random
from pathlib import Path
from typing import Dict, List, Tuple

import square.k8s
from square.dtypes import ConnectionParameters, K8sConfig

import pgext.k8s

# All extensions in the seed.
EXTENSIONS_PATH = "/apis/extensions.gardener.cloud/v1alpha1/extensions"

# Queued by the background task when it terminates.
STOPPED = "__STOPPED__"

# Convenience.
logit = logging.getLogger("app")


class ExtensionCache:
    def __init__(self, extension_type: str):
        self.extension_type = extension_type
        self.resource_version = -1
        self.manifests: Dict[str, dict] = {}

    def owns(self, manifest: dict) -> bool:
        return manifest.get("spec", {}).get("type", "") == self.extension_type

    def resync(self, listing: dict) -> List[dict]:
        """Replace the cache with a LIST response and return the differences.

        K8s returns the resource version of a listing as a string.

        """
        self.resource_version = int(listing["metadata"]["resourceVersion"])
        current = {
            obj["metadata"]["uid"]: obj for obj in listing["items"] if self.owns(obj)
        }

        events = [
            {"type": "DELETED", "object": self.manifests.pop(uid)}
            for uid in set(self.manifests) - set(current)
        ]
        for uid, obj in current.items():
            known = self.manifests.get(uid)
            if known is None:
                events.append({"type": "ADDED", "object": obj})
            elif known != obj:
                events.append({"type": "MODIFIED", "object": obj})
            self.manifests[uid] = obj
        return events

    def apply(self, event: str, obj: dict) -> dict | None:
        """Update the cache with a single watch event.

        Return the event for the controller or `None` if there is nothing to
        report. ADDED and MODIFIED are rewritten to agree with the cache because
        K8s may replay events after a reconnect.

        """
        self.resource_version = int(obj["metadata"]["resourceVersion"])
        if not self.owns(obj):
            return None

        uid = obj["metadata"]["uid"]
        if event == "DELETED":
            if self.manifests.pop(uid, None) is None:
                logit.warning("deleted unknown extension", {"uid": uid})
                return None
            return {"type": "DELETED", "object": obj}

        kind = "MODIFIED" if uid in self.manifests else "ADDED"
        self.manifests[uid] = obj
        return {"type": kind, "object": obj}


class ExtensionWatch:
    """Async iterator over the events of all extensions of one type.

    >>> async with ExtensionWatch(k8scfg, "postgres") as watch:
    ...     async for event in watch:
    ...         print(event["type"], event["object"]["metadata"]["namespace"])

    """

    def __init__(
        self,
        k8scfg: K8sConfig,
        extension_type: str,
        path: str = EXTENSIONS_PATH,
        timeout: int = 5,
        backoff: float = 5,
    ):
        self.k8scfg = k8scfg
        self.path = path
        self.timeout = timeout
        self.backoff = backoff
        self.cache = ExtensionCache(extension_type)
        self.queue: asyncio.Queue = asyncio.Queue()
        self.task = self.start()

    def start(self) -> asyncio.Task:
        return asyncio.create_task(self.run_forever())

    def stream_url(self) -> str:
        return (
            f"{self.path}?watch=true&timeoutSeconds={self.timeout}"
            f"&resourceVersion={self.cache.resource_version}"
        )

    def log_context(self) -> dict:
        base_url = self.k8scfg.client._base_url
        return {
            "component": "watch",
            "path": self.path,
            "type": self.cache.extension_type,
            "host": str(base_url) if base_url else "",
        }

    def __aiter__(self):  # codecov-skip
        return self

    async def __anext__(self) -> dict:
        event = await self.queue.get()
        if event == STOPPED:
            # Propagate the exception of the background task, if any.
            if not self.task.cancelled():
                self.task.result()
            raise StopAsyncIteration
        return event

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        self.task.cancel()

    async def publish(self, events: List[dict]) -> None:
        for event in events:
            await self.queue.put(event)

    async def relist(self) -> bool:
        """Refresh the cache from a full listing. Return `True` on error."""
        listing, err = await pgext.k8s.get(self.k8scfg, self.path)
        if err:
            return True
        await self.publish(self.cache.resync(listing))
        return False

    async def handle_line(self, line: str) -> bool:
        """Process one line of the watch stream. Return `True` on error."""
        # An empty line means K8s closed the stream, usually after `timeout`.
        if line == "":
            return False

        try:
            data = json.loads(line)
            event, obj = data["type"].upper(), data["object"]
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError):
            logit.error("corrupt watch event", self.log_context())
            return True

        if event in ("ADDED", "MODIFIED", "DELETED"):
            update = self.cache.apply(event, obj)
            if update is not None:
                await self.queue.put(update)
            return False

        # Our resource version has expired and we must list again.
        if event == "ERROR" and obj.get("code") == 410:
            logit.info("resource version expired", self.log_context())
            self.cache.resource_version = -1
            return False

        logit.error("watch error", {**self.log_context(), "status": obj})
        return True

    async def stream_once(self) -> bool:
        """Follow the watch stream until it ends. Return `True` on error."""
        if self.cache.resource_version < 0 and await self.relist():
            return True

        try:
            async with self.k8scfg.client.stream("GET", self.stream_url()) as resp:
                if resp.status_code != 200:
                    meta_log = {**self.log_context(), "status": resp.status_code}
                    logit.warning("cannot open watch", meta_log)
                    return True
                async for line in resp.aiter_lines():
                    await self.handle_line(line)
        except pgext.k8s.WEB_EXCEPTIONS as err:
            meta_log = {**self.log_context(), "reason": str(err)}
            logit.warning("watch interrupted", meta_log)
            return True
        return False

    async def run_forever(self) -> None:
        """Restart `stream_once` until the task is cancelled or fails."""
        try:
            while True:
                logit.debug("opening watch", self.log_context())
                if await self.stream_once():
                    await asyncio.sleep(self.backoff + random.uniform(-2, 2))
        except asyncio.CancelledError:
            logit.info("watch stopped", self.log_context())
            raise
        except Exception:
            logit.exception("watch crashed", self.log_context())
            raise
        finally:
            self.queue.put_nowait(STOPPED)


def create_cluster_config(kubeconf: Path, context: str) -> Tuple[K8sConfig, bool]:
    """Return a K8s client for the `context` in `kubeconf`."""
    cfg, err = square.k8s.load_auto_config(kubeconf, context)
    if err:
        return K8sConfig(), True

    # Read timeouts must exceed the server side timeout of the watch.
    cfg, err = square.k8s.create_httpx_client(
        cfg, ConnectionParameters(read=600, write=600, pool=600)
    )
    if err:
        return K8sConfig(), True

    cfg.client.base_url = cfg.url
    return cfg, False
