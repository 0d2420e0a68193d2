import logging

import pydantic

from pgext.errors import ContextLookupError, StoreError
from pgext.models import Cluster, EnvironmentContext
from pgext.store import Reader, ResourceKey

# Shoot annotation that confirms a forceful deletion.
FORCE_DELETION_ANNOTATION = "confirmation.gardener.cloud/force-deletion"

# Convenience.
logit = logging.getLogger("app")


def cluster_key(namespace: str) -> ResourceKey:
    return ResourceKey(
        apiVersion="extensions.gardener.cloud/v1alpha1",
        plural="clusters",
        name=namespace,
    )


def is_truthy(value: str) -> bool:
    return value.strip().lower() in ("1", "t", "true", "yes")


def parse_context(manifest: dict) -> EnvironmentContext:
    """Compile the environment context from a `Cluster` manifest."""
    cluster = Cluster.model_validate(manifest)
    shoot = cluster.spec.shoot
    if shoot is None:
        return EnvironmentContext(name=cluster.metadata.name)

    hibernation = shoot.spec.hibernation
    hibernated = hibernation is not None and hibernation.enabled is True
    force = is_truthy(shoot.metadata.annotations.get(FORCE_DELETION_ANNOTATION, ""))

    return EnvironmentContext(
        name=cluster.metadata.name, hibernated=hibernated, force_deletion=force
    )


async def get_context(reader: Reader, namespace: str) -> EnvironmentContext:
    """Return the environment context of the shoot that owns `namespace`."""
    try:
        manifest = await reader.get(cluster_key(namespace))
    except StoreError as err:
        logit.error("cannot fetch cluster", {"namespace": namespace, "err": str(err)})
        raise ContextLookupError(
            "failed to get cluster", {"namespace": namespace}
        ) from err

    try:
        return parse_context(manifest)
    except pydantic.ValidationError as err:
        raise ContextLookupError(
            "failed to parse cluster", {"namespace": namespace}
        ) from err
