import asyncio
import sys

import square
from hypercorn.asyncio import serve
from hypercorn.config import Config

import pgext.api
import pgext.logstreams
from pgext.metrics import Metrics

if __name__ == "__main__":  # codecov-skip
    square.square.setup_logging(2)
    cfg, err = pgext.api.compile_server_config()
    assert not err
    try:
        pgext.logstreams.setup(cfg.loglevel)
        hypercorn_cfg = Config()
        hypercorn_cfg.bind = [f"{cfg.host}:{cfg.port}"]
        app = pgext.api.make_app(cfg, Metrics())
        asyncio.run(serve(app, hypercorn_cfg))  # type: ignore
    except KeyboardInterrupt:
        print("User abort")
        sys.exit(1)
