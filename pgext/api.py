import asyncio
import logging
import os
import random
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Tuple

from fastapi import FastAPI, Request, status
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST

import pgext.watch
from pgext.actuator import Actuator, ActuatorConfig
from pgext.controller import Controller
from pgext.metrics import Metrics
from pgext.models import ServerConfig
from pgext.store import KubeStore

# Convenience.
logit = logging.getLogger("app")


def parse_feature_gates(text: str) -> Dict[str, bool]:
    """Parse feature gates like `Foo=true,Bar=false`."""
    gates: Dict[str, bool] = {}
    for item in text.split(","):
        if item.strip() == "":
            continue
        name, _, value = item.partition("=")
        if value.strip().lower() not in ("true", "false"):
            raise ValueError(f"invalid feature gate <{item}>")
        gates[name.strip()] = value.strip().lower() == "true"
    return gates


# ----------------------------------------------------------------------
# Setup Server.
# ----------------------------------------------------------------------
def compile_server_config() -> Tuple[ServerConfig, bool]:
    get = os.getenv
    try:
        cfg = ServerConfig(
            kubeconfig=Path(get("KUBECONFIG", "")),
            kubecontext=get("KUBECONTEXT", ""),
            loglevel=get("PGEXT_LOGLEVEL", "info"),
            host=get("PGEXT_HOST", "0.0.0.0"),
            port=int(get("PGEXT_PORT", "5001")),
            gardener_version=get("PGEXT_GARDENER_VERSION", ""),
            feature_gates=parse_feature_gates(get("PGEXT_FEATURE_GATES", "")),
            max_update_attempts=int(get("PGEXT_MAX_UPDATE_ATTEMPTS", "5")),
            timeout=float(get("PGEXT_TIMEOUT", "30")),
        )
        return cfg, False
    except ValueError as e:
        logit.error("invalid environment variables", {"reason": tuple(e.args)})
        return (
            ServerConfig(
                kubeconfig=Path(""), kubecontext="", loglevel="", host="", port=-1
            ),
            True,
        )


async def run_controller(cfg: ServerConfig, metrics: Metrics):
    k8scfg, err = pgext.watch.create_cluster_config(cfg.kubeconfig, cfg.kubecontext)
    if err:
        raise RuntimeError("cannot create K8s client")

    store = KubeStore(k8scfg)
    actuator = Actuator(
        ActuatorConfig(
            reader=store,
            client=store,
            metrics=metrics,
            gardener_version=cfg.gardener_version,
            gardenlet_feature_gates=cfg.feature_gates,
            max_update_attempts=cfg.max_update_attempts,
            timeout=cfg.timeout,
        )
    )
    controller = Controller(k8scfg, actuator)

    # Re-establish the watch every ~2min.
    timeout = 120 + int(random.uniform(-10, 10))
    ex_type = actuator.extension_type()
    watch = pgext.watch.ExtensionWatch(k8scfg, ex_type, timeout=timeout)
    logit.info("controller started", {"type": ex_type})
    try:
        async with k8scfg.client, watch:
            await controller.run(watch)
    except asyncio.CancelledError:
        logit.info("controller cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg: ServerConfig = app.extra["config"]
    metrics: Metrics = app.extra["metrics"]

    task = asyncio.create_task(run_controller(cfg, metrics))
    logit.info("server startup complete")
    yield

    task.cancel()
    await task
    logit.info("server shutdown complete")


def make_app(cfg: ServerConfig, metrics: Metrics, controller: bool = True) -> FastAPI:
    """Return a fully configured FastAPI instance.

    Set `controller=False` to skip the controller, eg in tests.

    """
    app = FastAPI(
        lifespan=lifespan if controller else None,
        title="Gardener Extension for PostgreSQL",
        version="0.1.0",
        config=cfg,
        metrics=metrics,
    )

    @app.get("/healthz")
    def get_healthz() -> int:
        return status.HTTP_200_OK

    @app.get("/metrics")
    def get_metrics(request: Request) -> Response:
        metrics: Metrics = request.app.extra["metrics"]
        return Response(content=metrics.render(), media_type=CONTENT_TYPE_LATEST)

    return app
