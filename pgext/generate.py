import copy
from typing import Dict, List

from pgext.models import K8sMetadata, PostgresConfig, Postgresql
from pgext.store import ResourceKey

# Every shoot gets exactly one Postgres cluster with this name.
POSTGRES_CLUSTER_NAME = "postgres-cluster"


def postgresql_key(namespace: str) -> ResourceKey:
    """Return the fixed identity of the Postgres cluster in `namespace`."""
    return ResourceKey(
        apiVersion="acid.zalan.do/v1",
        plural="postgresqls",
        name=POSTGRES_CLUSTER_NAME,
        namespace=namespace,
    )


def postgresql_manifest(cfg: PostgresConfig, namespace: str) -> Postgresql:
    """Produce the Postgres cluster resource for the validated `cfg`.

    This is a pure function: the same inputs always produce the same manifest.

    """
    spec = cfg.spec

    # Use fresh lists to decouple the manifest from the config.
    users: Dict[str, List[str]] = {
        user: list(roles) for user, roles in spec.users.items()
    }

    return Postgresql(
        metadata=K8sMetadata(name=POSTGRES_CLUSTER_NAME, namespace=namespace),
        spec=Postgresql.Spec(
            volume=Postgresql.Spec.Volume(size=str(spec.volumeSize)),
            numberOfInstances=spec.replicas,
            users=users,
            databases=dict(spec.databases),
            postgresql=Postgresql.Spec.Param(version=spec.postgresVersion),
        ),
    )


def create_manifest(target: Postgresql) -> dict:
    """Return the K8s manifest to POST for a new Postgres cluster."""
    manifest = target.model_dump()

    # Only send the metadata K8s needs to create the resource.
    manifest["metadata"] = dict(
        name=target.metadata.name, namespace=target.metadata.namespace
    )
    return manifest


def upsert_spec(existing: dict, target: Postgresql) -> dict:
    """Return a copy of `existing` with the fields of `target` upserted.

    Only the fields this extension owns are replaced. All other fields, most
    notably `metadata.resourceVersion`, the status and any spec fields that
    other controllers or users added, remain untouched.

    """
    manifest = copy.deepcopy(existing)
    spec = target.spec

    out = manifest.setdefault("spec", {})
    out.setdefault("volume", {})["size"] = spec.volume.size
    out["numberOfInstances"] = spec.numberOfInstances
    out["users"] = copy.deepcopy(spec.users)
    out["databases"] = dict(spec.databases)
    out.setdefault("postgresql", {})["version"] = spec.postgresql.version
    return manifest
