"""Tests for workflow-aware logging."""

import json
import logging
import threading

from bizflow.core.logging import (
    StructuredFormatter,
    WorkflowContextFilter,
    clear_logging_context,
    set_logging_context,
    _context_filter,
)


def make_record(message="hello"):
    return logging.LogRecord("bizflow.test", logging.INFO, __file__, 10, message, None, None)


class TestWorkflowContextFilter:

    def teardown_method(self):
        clear_logging_context()

    def test_tags_record_with_instance_and_step(self):
        set_logging_context(instance_id="inst-1", step_id="step-2", operation="execute_step")
        record = make_record()

        _context_filter.filter(record)

        assert record.workflow_tag == "[inst-1/step-2] "
        assert record.workflow["operation"] == "execute_step"

    def test_no_context_means_no_tag(self):
        record = make_record()

        _context_filter.filter(record)

        assert record.workflow_tag == ""

    def test_context_is_per_thread(self):
        context_filter = WorkflowContextFilter()
        context_filter.context.update(instance_id="main")
        seen = {}

        def worker():
            context_filter.context.update(instance_id="worker")
            record = make_record()
            context_filter.filter(record)
            seen["worker"] = record.workflow_tag

        thread = threading.Thread(target=worker)
        thread.start()
        thread.join()

        record = make_record()
        context_filter.filter(record)
        assert seen["worker"] == "[worker] "
        assert record.workflow_tag == "[main] "


class TestStructuredFormatter:

    def test_emits_workflow_fields(self):
        record = make_record("step done")
        record.workflow = {"instance_id": "inst-1", "step_id": None}
        record.extra_fields = {"attempt": 2}

        entry = json.loads(StructuredFormatter().format(record))

        assert entry["message"] == "step done"
        assert entry["instance_id"] == "inst-1"
        assert "step_id" not in entry
        assert entry["extra"] == {"attempt": 2}
