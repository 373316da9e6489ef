import pytest

from botqueue.v1.core.registries import JobRegistry, Registry
from botqueue.v1.infra.jobs.registry_init import (
    GENERATE_CUSTOM_REPORT,
    PROCESS_PENDING_FOLLOW_UPS,
    SEND_FOLLOW_UP,
    build_follow_up_handlers,
    build_report_handlers,
    report_job_type,
)


def test_registry_basic_operations():
    """Test basic registry register, get, list operations."""
    registry = Registry[str]("Test")

    assert registry.list() == []

    registry.register("test_impl", "test_value")
    assert registry.get("test_impl") == "test_value"
    assert registry.list() == ["test_impl"]
    assert "test_impl" in registry

    with pytest.raises(KeyError, match="No test implementation registered"):
        registry.get("nonexistent")


def test_registry_freeze_blocks_registration():
    registry = Registry[str]("Test")
    registry.register("impl1", "value1")
    registry.freeze()

    assert registry.is_frozen()
    with pytest.raises(RuntimeError, match="registry is frozen"):
        registry.register("impl2", "value2")

    # Existing entries stay readable
    assert registry.get("impl1") == "value1"


def test_job_registry_remembers_queue():
    registry = JobRegistry("deferred-tasks")
    assert registry.queue_name == "deferred-tasks"
    assert registry.list() == []


def test_follow_up_handler_table(follow_ups):
    registry = build_follow_up_handlers(follow_ups)

    assert set(registry.list()) == {SEND_FOLLOW_UP, PROCESS_PENDING_FOLLOW_UPS}
    assert registry.is_frozen()


def test_report_handler_table(reports):
    registry = build_report_handlers(reports)

    assert set(registry.list()) == {
        "generate_daily_report",
        "generate_weekly_report",
        "generate_monthly_report",
        GENERATE_CUSTOM_REPORT,
    }
    assert report_job_type("weekly") == "generate_weekly_report"
    assert registry.is_frozen()
