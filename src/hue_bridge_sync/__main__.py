from __future__ import annotations

import logging

import uvicorn

from hue_bridge_sync.config import AppConfig


def main() -> None:
    config = AppConfig.from_env()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("hue_bridge_sync.app:app", host="0.0.0.0", port=config.port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
