import datetime
import re

import pytest

from pagestack.serialization import JsonSafetyError, to_json_safe


def _record(**payload):
    return {"version": 1, "type": "DeletePages", "payload": {"id": "cmd-1", **payload}, "timestamp": 1000}


class TestToJsonSafe:
    def test_accepts_nested_plain_data(self):
        record = _record(pageIds=["a", "b"], nested={"n": [1, 2.5, None, True, {"k": "v"}]})
        assert to_json_safe(record) == record

    def test_result_is_detached(self):
        record = _record(pageIds=["a"])
        safe = to_json_safe(record)
        safe["payload"]["pageIds"].append("b")
        assert record["payload"]["pageIds"] == ["a"]

    @pytest.mark.parametrize(
        "value",
        [
            datetime.datetime(2024, 1, 1),
            datetime.date(2024, 1, 1),
            {1, 2},
            frozenset([1]),
            b"raw",
            bytearray(b"raw"),
            (1, 2),
            float("nan"),
            float("inf"),
            re.compile("x"),
            object(),
        ],
    )
    def test_rejects_values_that_do_not_survive_json(self, value):
        with pytest.raises(JsonSafetyError):
            to_json_safe(_record(bad=value))

    def test_rejects_deeply_nested_date_with_path(self):
        with pytest.raises(JsonSafetyError, match=r"payload\.tree\[0\]\.meta\.when"):
            to_json_safe(_record(tree=[{"meta": {"when": datetime.date.today()}}]))

    def test_rejects_non_string_keys(self):
        with pytest.raises(JsonSafetyError):
            to_json_safe(_record(bad={1: "x"}))

    def test_json_safety_error_is_value_error(self):
        assert issubclass(JsonSafetyError, ValueError)


class TestEnvelope:
    def test_missing_payload_id(self):
        with pytest.raises(JsonSafetyError, match="payload.id"):
            to_json_safe({"version": 1, "type": "X", "payload": {}, "timestamp": 0})

    def test_empty_type(self):
        with pytest.raises(JsonSafetyError, match="type"):
            to_json_safe({"version": 1, "type": "", "payload": {"id": "x"}, "timestamp": 0})

    @pytest.mark.parametrize("timestamp", [None, "now", float("inf"), True])
    def test_bad_timestamp(self, timestamp):
        with pytest.raises(JsonSafetyError, match="timestamp"):
            to_json_safe({"version": 1, "type": "X", "payload": {"id": "x"}, "timestamp": timestamp})

    def test_non_integer_version(self):
        with pytest.raises(JsonSafetyError, match="version"):
            to_json_safe({"version": "1", "type": "X", "payload": {"id": "x"}, "timestamp": 0})

    def test_payload_must_be_mapping(self):
        with pytest.raises(JsonSafetyError, match="payload"):
            to_json_safe({"version": 1, "type": "X", "payload": ["id"], "timestamp": 0})
