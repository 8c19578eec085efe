"""python -m toolsight — 用 uvicorn 启动服务。"""

from __future__ import annotations

import uvicorn

from toolsight.app import create_app
from toolsight.config import load_settings


def main() -> None:
    settings = load_settings()
    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.server.log_level.lower(),
    )


if __name__ == "__main__":
    main()
