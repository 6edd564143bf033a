# src/dcloud/api/__main__.py
from __future__ import annotations

import uvicorn

from dcloud.env import load_dotenv_if_present


def main() -> None:
    # Load .env early so DCLOUD_* vars exist before anything reads them.
    load_dotenv_if_present()

    # Import after dotenv load (prevents "config read before env" surprises)
    from dcloud.api.app import create_app
    from dcloud.runtime.executor_boot import build_executor
    from dcloud.runtime.registry_config import load_registry_config

    cfg = load_registry_config()
    app = create_app(executor=build_executor(cfg))

    uvicorn.run(app, host=cfg.api_host, port=int(cfg.api_port), log_level=cfg.log_level.lower())


if __name__ == "__main__":
    main()
