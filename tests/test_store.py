import json

import pytest
import respx
from httpx import Response

from pgext.errors import AlreadyExistsError, ConflictError, NotFoundError, StoreError
from pgext.generate import postgresql_key
from pgext.store import KubeStore, ResourceKey, revision

from .conftest import K8sConfig, load_specimen

KEY = postgresql_key("shoot-a")
URL = "/apis/acid.zalan.do/v1/namespaces/shoot-a/postgresqls/postgres-cluster"


class TestResourceKey:
    def test_urls(self):
        assert KEY.collection_url() == URL.rpartition("/")[0]
        assert KEY.url() == URL
        assert str(KEY) == "postgresqls/shoot-a/postgres-cluster"

        # Core API group.
        key = ResourceKey(
            apiVersion="v1", plural="secrets", name="foo", namespace="bar"
        )
        assert key.url() == "/api/v1/namespaces/bar/secrets/foo"

        # Cluster scoped resource.
        key = ResourceKey(
            apiVersion="extensions.gardener.cloud/v1alpha1",
            plural="clusters",
            name="shoot-a",
        )
        assert key.url() == "/apis/extensions.gardener.cloud/v1alpha1/clusters/shoot-a"

    def test_hashable(self):
        assert {KEY: 1}[postgresql_key("shoot-a")] == 1

    def test_revision(self):
        assert revision(load_specimen("postgresql.yaml")) == "5"
        assert revision({}) == ""


class TestKubeStore:
    async def test_get(self, k8scfg: K8sConfig):
        manifest = load_specimen("postgresql.yaml")
        respx.get(URL).return_value = Response(200, json=manifest)
        assert await KubeStore(k8scfg).get(KEY) == manifest

    @pytest.mark.parametrize(
        "status,exc", [(404, NotFoundError), (403, StoreError), (500, StoreError)]
    )
    async def test_get_err(self, status: int, exc, k8scfg: K8sConfig):
        respx.get(URL).return_value = Response(status, json={"kind": "Status"})
        with pytest.raises(exc) as err:
            await KubeStore(k8scfg).get(KEY)
        assert err.value.status == status

    async def test_create(self, k8scfg: K8sConfig):
        manifest = {"metadata": {"name": "postgres-cluster"}}
        m_http = respx.post(KEY.collection_url())
        m_http.return_value = Response(201, json=manifest)

        assert await KubeStore(k8scfg).create(KEY, manifest) == manifest
        assert json.loads(m_http.calls[0].request.content) == manifest

    @pytest.mark.parametrize(
        "status,exc", [(409, AlreadyExistsError), (422, StoreError)]
    )
    async def test_create_err(self, status: int, exc, k8scfg: K8sConfig):
        respx.post(KEY.collection_url()).return_value = Response(status, json={})
        with pytest.raises(exc):
            await KubeStore(k8scfg).create(KEY, {})

    async def test_update(self, k8scfg: K8sConfig):
        manifest = load_specimen("postgresql.yaml")
        m_http = respx.put(URL)
        m_http.return_value = Response(200, json=manifest)

        assert await KubeStore(k8scfg).update(KEY, manifest) == manifest
        sent = json.loads(m_http.calls[0].request.content)
        assert sent["metadata"]["resourceVersion"] == "5"

    @pytest.mark.parametrize(
        "status,exc",
        [(409, ConflictError), (404, NotFoundError), (500, StoreError)],
    )
    async def test_update_err(self, status: int, exc, k8scfg: K8sConfig):
        respx.put(URL).return_value = Response(status, json={})
        with pytest.raises(exc):
            await KubeStore(k8scfg).update(KEY, {})

    @pytest.mark.parametrize("status", [200, 202])
    async def test_delete(self, status: int, k8scfg: K8sConfig):
        m_http = respx.delete(URL)
        m_http.return_value = Response(status, json={})
        assert await KubeStore(k8scfg).delete(KEY) is None
        assert m_http.called

    @pytest.mark.parametrize("status,exc", [(404, NotFoundError), (403, StoreError)])
    async def test_delete_err(self, status: int, exc, k8scfg: K8sConfig):
        respx.delete(URL).return_value = Response(status, json={})
        with pytest.raises(exc):
            await KubeStore(k8scfg).delete(KEY)

    async def test_corrupt_response(self, k8scfg: K8sConfig):
        respx.get(URL).return_value = Response(200, text="{invalid json]")
        with pytest.raises(StoreError) as err:
            await KubeStore(k8scfg).get(KEY)
        assert not isinstance(err.value, NotFoundError)
