import json
import logging
from typing import Any, Dict

import pydantic
import yaml

from pgext.errors import ConfigDecodeError
from pgext.models import PostgresConfig

API_VERSION = "postgres.extensions.gardener.cloud/v1alpha1"
KIND = "PostgresConfig"

# Convenience.
logit = logging.getLogger("app")


class Decoder:
    """Decode the provider config of an extension into a `PostgresConfig`.

    The payload is usually the already parsed object that K8s embeds into the
    extension but raw JSON or YAML documents are accepted as well.

    """

    def __init__(self, api_version: str = API_VERSION, kind: str = KIND):
        self.api_version = api_version
        self.kind = kind

    def load(self, payload: Dict[str, Any] | bytes | str) -> Dict[str, Any]:
        """Return the payload as a dictionary."""
        if isinstance(payload, dict):
            return payload

        try:
            doc = yaml.safe_load(payload)
        except yaml.YAMLError as err:
            msg = "provider config is not valid YAML or JSON"
            raise ConfigDecodeError(msg) from err

        if not isinstance(doc, dict):
            raise ConfigDecodeError("provider config must be an object")
        return doc

    def decode(self, payload: Dict[str, Any] | bytes | str) -> PostgresConfig:
        doc = self.load(payload)

        # The type information is optional but must match if it is present.
        api_version, kind = doc.get("apiVersion", ""), doc.get("kind", "")
        if api_version not in ("", self.api_version) or kind not in ("", self.kind):
            raise ConfigDecodeError(
                "invalid provider spec configuration",
                {"apiVersion": api_version, "kind": kind},
            )

        try:
            return PostgresConfig.model_validate(doc)
        except pydantic.ValidationError as err:
            logit.debug("cannot decode provider config", {"errors": err.errors()})
            raise ConfigDecodeError(
                "invalid provider spec configuration",
                {"errors": [str.join(".", map(str, e["loc"])) for e in err.errors()]},
            ) from err

    def encode(self, cfg: PostgresConfig) -> bytes:
        """Return the JSON wire form of `cfg` including the type information."""
        data = cfg.model_dump(mode="json")
        data["apiVersion"], data["kind"] = self.api_version, self.kind
        return json.dumps(data).encode()
