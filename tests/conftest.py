from pathlib import Path

import pytest

from resurrector.config import AppSettings, DeployConfig, OrchestratorConfig, ToolchainConfig
from resurrector.main import create_app
from tests.fakes import FakePublisher

VALID_TOKEN = "ghp_" + "a" * 36

SAMPLE_ABAP = """REPORT z_sales_pricing.
* Calculate net price with customer discount
TABLES: vbak.
DATA: lt_orders TYPE TABLE OF vbak.
SELECT * FROM vbak INTO TABLE lt_orders WHERE erdat > sy-datum.
LOOP AT lt_orders INTO DATA(ls_order).
  IF ls_order-netwr > 1000.
    SELECT SINGLE * FROM konv INTO @DATA(ls_cond) WHERE knumv = @ls_order-knumv.
  ENDIF.
ENDLOOP.
AUTHORITY-CHECK OBJECT 'V_VBAK_VKO' ID 'ACTVT' FIELD '03'.
CALL FUNCTION 'BAPI_SALESORDER_GETLIST'.
PERFORM apply_discount.
"""


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        tool_servers=[],
        orchestrator=OrchestratorConfig(auto_connect=False, health_check_interval_ms=0, analyzer_server=None),
        toolchain=ToolchainConfig(validate_command=None),
        deploy=DeployConfig(github_token=VALID_TOKEN),
        database_path=str(tmp_path / "test.db"),
        work_dir=str(tmp_path / "work"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        publisher: FakePublisher | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        fake_publisher = publisher or FakePublisher()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, publisher_factory=fake_publisher.factory, config_path=cfg_path)
        return app, cfg_path, fake_publisher

    return _factory
