"""Access the K8s API as a key/object store with optimistic concurrency.

The actuator consumes two capabilities: a `Reader` that can only fetch
objects and a `Client` that can also create, update and delete them. Both are
plain protocols so that tests can substitute an in-memory store.

Every stored object carries its revision in `metadata.resourceVersion`. An
`update` must submit the revision it last saw and fails with `ConflictError`
if somebody else has modified the object in the meantime.

"""

import logging
from typing import Protocol, Tuple

from pydantic import BaseModel, ConfigDict
from square.dtypes import K8sConfig

import pgext.k8s
from pgext.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    StoreError,
)

# Convenience.
logit = logging.getLogger("app")


class ResourceKey(BaseModel):
    """Uniquely identify a K8s resource."""

    model_config = ConfigDict(frozen=True)

    apiVersion: str
    plural: str
    name: str

    # Empty for cluster scoped resources.
    namespace: str = ""

    def collection_url(self) -> str:
        prefix = "/api" if "/" not in self.apiVersion else "/apis"
        prefix = f"{prefix}/{self.apiVersion}"
        if self.namespace:
            return f"{prefix}/namespaces/{self.namespace}/{self.plural}"
        return f"{prefix}/{self.plural}"

    def url(self) -> str:
        return f"{self.collection_url()}/{self.name}"

    def __str__(self) -> str:
        return f"{self.plural}/{self.namespace}/{self.name}"


class Reader(Protocol):
    async def get(self, key: ResourceKey) -> dict: ...


class Client(Reader, Protocol):
    async def create(self, key: ResourceKey, manifest: dict) -> dict: ...

    async def update(self, key: ResourceKey, manifest: dict) -> dict: ...

    async def delete(self, key: ResourceKey) -> None: ...


def revision(manifest: dict) -> str:
    """Return the revision token of a stored object."""
    return manifest.get("metadata", {}).get("resourceVersion", "")


class KubeStore:
    """Implement the `Client` protocol with the K8s REST API."""

    def __init__(self, k8scfg: K8sConfig):
        self.k8scfg = k8scfg

    async def _request(
        self, method: str, url: str, payload: dict | None = None
    ) -> Tuple[dict, int]:
        resp, code, err = await pgext.k8s.request(self.k8scfg, method, url, payload)
        if err:
            raise StoreError(f"{method} {url} failed", code)
        return resp, code

    async def get(self, key: ResourceKey) -> dict:
        resp, code = await self._request("GET", key.url())
        if code == 404:
            raise NotFoundError(f"{key} not found", code)
        if code != 200:
            logit.error(f"{code} - GET - {key}", {"response": resp})
            raise StoreError(f"cannot get {key}", code)
        return resp

    async def create(self, key: ResourceKey, manifest: dict) -> dict:
        resp, code = await self._request("POST", key.collection_url(), manifest)
        if code == 409:
            raise AlreadyExistsError(f"{key} already exists", code)
        if code not in (200, 201, 202):
            logit.error(f"{code} - POST - {key}", {"response": resp})
            raise StoreError(f"cannot create {key}", code)
        return resp

    async def update(self, key: ResourceKey, manifest: dict) -> dict:
        resp, code = await self._request("PUT", key.url(), manifest)
        if code == 409:
            raise ConflictError(f"{key} was modified concurrently", code)
        if code == 404:
            raise NotFoundError(f"{key} not found", code)
        if code not in (200, 201):
            logit.error(f"{code} - PUT - {key}", {"response": resp})
            raise StoreError(f"cannot update {key}", code)
        return resp

    async def delete(self, key: ResourceKey) -> None:
        resp, code = await self._request("DELETE", key.url())
        if code == 404:
            raise NotFoundError(f"{key} not found", code)
        if code not in (200, 202):
            logit.error(f"{code} - DELETE - {key}", {"response": resp})
            raise StoreError(f"cannot delete {key}", code)
