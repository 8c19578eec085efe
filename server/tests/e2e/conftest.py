"""E2E 测试专用 fixtures — mock 视觉模型 Provider，使用 TestClient。"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from starlette.testclient import TestClient

from toolsight.config import Settings


@pytest.fixture
def e2e_settings(test_config) -> Settings:
    return test_config


@pytest.fixture
def e2e_app_and_client(e2e_settings, mock_provider):
    """创建带有 mock Provider 的 FastAPI 应用和 TestClient。

    patch 与 TestClient 放在同一个 fixture 中，保证 lifespan 期间 patch 有效。
    """
    from toolsight.app import create_app

    with patch("toolsight.app.create_provider") as MockFactory:
        MockFactory.return_value = mock_provider
        app = create_app(e2e_settings)
        with TestClient(app) as client:
            yield app, client


@pytest.fixture
def e2e_app(e2e_app_and_client):
    app, _ = e2e_app_and_client
    return app


@pytest.fixture
def client(e2e_app_and_client) -> TestClient:
    _, client = e2e_app_and_client
    return client
