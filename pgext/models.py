from enum import Enum
from pathlib import Path
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict

from pgext.quantity import Quantity

# ----------------------------------------------------------------------
# Kubernetes
# ----------------------------------------------------------------------


class K8sMetadata(BaseModel):
    name: str = ""
    namespace: str = ""
    uid: str = ""
    resourceVersion: str = ""
    labels: Dict[str, str] = {}
    annotations: Dict[str, str] = {}
    finalizers: List[str] = []
    deletionTimestamp: str | None = None


# ----------------------------------------------------------------------
# Gardener
# ----------------------------------------------------------------------


class ExtensionSpec(BaseModel):
    type: str = ""

    # Opaque payload that decodes into a `PostgresConfig`. K8s usually embeds
    # it as an object but callers may also supply the raw JSON/YAML bytes.
    providerConfig: Dict[str, Any] | bytes | str | None = None


class Extension(BaseModel):
    """The `extensions.gardener.cloud/v1alpha1` resource that triggers a pass."""

    apiVersion: str = "extensions.gardener.cloud/v1alpha1"
    kind: str = "Extension"
    metadata: K8sMetadata = K8sMetadata()
    spec: ExtensionSpec = ExtensionSpec()

    def is_deleted(self) -> bool:
        return self.metadata.deletionTimestamp is not None


class Shoot(BaseModel):
    class Spec(BaseModel):
        class Hibernation(BaseModel):
            enabled: bool | None = None

        hibernation: Hibernation | None = None

    metadata: K8sMetadata = K8sMetadata()
    spec: Spec = Spec()


class Cluster(BaseModel):
    """The cluster scoped `Cluster` resource gardenlet maintains for each shoot.

    The name of the resource matches the namespace of the extension.

    """

    class Spec(BaseModel):
        shoot: Shoot | None = None

    metadata: K8sMetadata = K8sMetadata()
    spec: Spec = Spec()


class EnvironmentContext(BaseModel):
    """Read-only facts about the shoot that owns an extension namespace."""

    model_config = ConfigDict(frozen=True)

    name: str
    hibernated: bool = False
    force_deletion: bool = False

    @property
    def suspended(self) -> bool:
        return self.hibernated


class Operation(str, Enum):
    """Lifecycle operations. The values double as metric labels."""

    RECONCILE = "reconcile"
    DELETE = "delete"
    FORCE_DELETE = "force_delete"
    RESTORE = "restore"
    MIGRATE = "migrate"


# ----------------------------------------------------------------------
# Provider Config
# ----------------------------------------------------------------------


class PostgresConfigSpec(BaseModel):
    """Desired state of the Postgres cluster for one shoot.

    All fields default to their zero value. It is the job of
    `pgext.validation.validate` to reject incomplete specs.

    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    # Size of the persistent volume for each cluster member.
    volumeSize: Quantity = Quantity()

    # Number of cluster members.
    replicas: int = 0

    # Database users and their role flags, eg `{"app": ["login"]}`.
    users: Dict[str, List[str]] = {}

    # Database names and their owners, eg `{"appdb": "app"}`.
    databases: Dict[str, str] = {}

    postgresVersion: str = ""


class PostgresConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    apiVersion: str = ""
    kind: str = ""
    spec: PostgresConfigSpec = PostgresConfigSpec()


# ----------------------------------------------------------------------
# Zalando Postgres Operator
# ----------------------------------------------------------------------


class Postgresql(BaseModel):
    """Subset of the `acid.zalan.do/v1` resource this extension owns."""

    class Spec(BaseModel):
        class Volume(BaseModel):
            size: str = ""

        class Param(BaseModel):
            version: str = ""

        volume: Volume = Volume()
        numberOfInstances: int = 0
        users: Dict[str, List[str]] = {}
        databases: Dict[str, str] = {}
        postgresql: Param = Param()

    apiVersion: str = "acid.zalan.do/v1"
    kind: str = "postgresql"
    metadata: K8sMetadata = K8sMetadata()
    spec: Spec = Spec()


# ----------------------------------------------------------------------
# Extension Internal Models.
# ----------------------------------------------------------------------


class ServerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kubeconfig: Path
    kubecontext: str

    loglevel: str
    host: str
    port: int

    # Provided by gardenlet as extra Helm values during the deployment.
    gardener_version: str = ""
    feature_gates: Dict[str, bool] = {}

    # Number of update attempts before the actuator gives up on conflicts.
    max_update_attempts: int = 5

    # Deadline for a single pass in seconds.
    timeout: float = 30
