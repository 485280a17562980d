"""configure_logging 输出测试。"""
import pytest
import structlog

from node_planner.common.logging import configure_logging


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.mark.parametrize("app_env", ["development", "production"])
def test_exception_traceback_rendered(app_env, capsys):
    configure_logging(app_env, "INFO")
    log = structlog.get_logger()
    try:
        raise ValueError("boom")
    except ValueError:
        log.exception("batch_failed", batch="a.csv")

    out = capsys.readouterr().out
    assert "batch_failed" in out
    assert "Traceback (most recent call last)" in out
    assert "ValueError: boom" in out


def test_level_filtering(capsys):
    configure_logging("production", "WARNING")
    log = structlog.get_logger()
    log.info("due_jobs_found", count=1)
    log.warning("plan_interrupted", plan_id=1)

    out = capsys.readouterr().out
    assert "due_jobs_found" not in out
    assert '"event": "plan_interrupted"' in out
