"""序列化工具与 Task 负载测试。"""

import orjson

from conftest import make_task
from crawlqueue.core.errors import ErrorClass
from crawlqueue.scheduling.tasks import AttemptRecord, Priority, Task
from crawlqueue.utils.serialization import dumps, dumps_str, loads, to_jsonable


def test_task_payload_survives_store_encoding():
    task = make_task("https://example.com/?b=1&a=2", depth=2, priority=Priority.LOW)
    task = task.retried(AttemptRecord(attempt=0, error_class=ErrorClass.TRANSIENT, cause="reset", at=1.5))

    restored = Task.from_dict(loads(dumps_str(task.to_dict())))

    assert restored == task
    assert restored.task_id == "https://example.com/?a=2&b=1"
    assert restored.tier == (3, 2)


def test_to_jsonable_handles_enums_bytes_and_nested_dataclasses():
    record = AttemptRecord(attempt=1, error_class=ErrorClass.PERMANENT, cause="gone", at=2.0)

    data = to_jsonable({"record": record, "raw": b"\xffok", "tags": {"a"}})

    assert data["record"] == {
        "attempt": 1,
        "error_class": "permanent",
        "cause": "gone",
        "at": 2.0,
        "kind": "AttemptRecord",
    }
    assert data["raw"].endswith("ok")
    assert data["tags"] == ["a"]


def test_dumps_returns_json_bytes():
    assert orjson.loads(dumps({"priority": Priority.HIGH})) == {"priority": 1}
