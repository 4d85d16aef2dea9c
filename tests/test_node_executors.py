"""Tests for the per-type node handlers."""

from datetime import timedelta

import pytest

from formflow.config import AppConfig, ConditionWaitingPolicy
from formflow.core.node_executors import NodeExecutors, build_evaluation_context
from formflow.models.core import ExecutionContext, ExecutionStatusEnum, NodeLogStatus

from conftest import FIXED_NOW, amount_condition, edge, node, save_workflow


def run_context(store, workflow_id, trigger_data=None, **kwargs):
    execution_id = store.create_execution(workflow_id, "start", trigger_data)
    return ExecutionContext(
        execution_id=execution_id,
        workflow_id=workflow_id,
        trigger_data=trigger_data or {},
        **kwargs
    )


@pytest.fixture
def linear_workflow(store):
    return save_workflow(
        store,
        [
            node("start", "start", triggerType="form_submission", triggerFormId="form-1"),
            node("act", "action", actionType="log_event"),
            node("approve", "approval", approvalAction="auto_approve"),
            node("assign", "form-assignment", targetFormId="form-2"),
            node("notify", "notification", notificationConfig={"type": "email"}),
            node("end", "end"),
        ],
        [
            edge("start", "act"),
            edge("act", "approve"),
            edge("approve", "assign"),
            edge("assign", "notify"),
            edge("notify", "end"),
        ]
    )


class TestEvaluationContext:

    def test_submission_data_is_the_form_namespace(self):
        context = ExecutionContext(
            execution_id="e",
            workflow_id="w",
            trigger_data={"submissionData": {"amount": 5}, "userRole": "manager", "formStatus": "open"},
            submitter_id="u1",
            submission_id="s1"
        )
        evaluation = build_evaluation_context(context)
        assert evaluation.form_data == {"amount": 5}
        assert evaluation.user_properties["role"] == "manager"
        assert evaluation.system_data["formStatus"] == "open"
        assert evaluation.system_data["currentUserId"] == "u1"
        assert evaluation.system_data["workflowExecutionId"] == "e"

    def test_trigger_data_without_submission_is_used_directly(self):
        context = ExecutionContext(execution_id="e", workflow_id="w", trigger_data={"amount": 5})
        evaluation = build_evaluation_context(context)
        assert evaluation.form_data == {"amount": 5}
        assert evaluation.user_properties["role"] == "user"


class TestSimpleHandlers:

    def test_start(self, store, node_executors, linear_workflow):
        context = run_context(store, linear_workflow, {"formId": "form-1"})
        result = node_executors.execute(store.get_node(linear_workflow, "start"), context)
        assert result.success is True
        assert result.next_node_ids == ["act"]
        assert result.output["triggerType"] == "form_submission"
        assert result.output["formId"] == "form-1"

    def test_action_and_approval(self, store, node_executors, linear_workflow):
        context = run_context(store, linear_workflow)
        action = node_executors.execute(store.get_node(linear_workflow, "act"), context)
        assert action.success is True
        assert action.next_node_ids == ["approve"]

        approval = node_executors.execute(store.get_node(linear_workflow, "approve"), context)
        assert approval.success is True
        assert approval.output["approved"] is True

    def test_action_without_output_reports_action_type(self, store, node_executors, action_registry, linear_workflow):
        action_registry.register_action("log_event", lambda ctx: None, replace=True)
        context = run_context(store, linear_workflow)
        result = node_executors.execute(store.get_node(linear_workflow, "act"), context)
        assert result.output == {"action": "log_event", "executed": True}

    def test_form_assignment_and_notification(self, store, node_executors, linear_workflow):
        context = run_context(store, linear_workflow)
        assign = node_executors.execute(store.get_node(linear_workflow, "assign"), context)
        assert assign.output == {"assigned": True, "targetForm": "form-2"}

        notify = node_executors.execute(store.get_node(linear_workflow, "notify"), context)
        assert notify.output == {"notificationSent": True, "type": "email"}
        assert notify.next_node_ids == ["end"]

    def test_end(self, store, node_executors, linear_workflow):
        context = run_context(store, linear_workflow)
        result = node_executors.execute(store.get_node(linear_workflow, "end"), context)
        assert result.success is True
        assert result.next_node_ids == []

    def test_failed_action_still_reports_successors(self, store, node_executors):
        workflow_id = save_workflow(
            store,
            [node("start", "start"), node("act", "action", actionType="nope"), node("end", "end")],
            [edge("start", "act"), edge("act", "end")]
        )
        context = run_context(store, workflow_id)
        result = node_executors.execute(store.get_node(workflow_id, "act"), context)
        assert result.success is False
        assert result.error == "Unknown action type: nope"
        assert result.next_node_ids == ["end"]


@pytest.fixture
def condition_workflow(store):
    """cond -true-> yes -> end_yes, cond -false-> no -> end_no."""
    return save_workflow(
        store,
        [
            node("start", "start"),
            node("cond", "condition", conditionConfig=amount_condition(100)),
            node("yes", "action", actionType="log_event"),
            node("no", "action", actionType="log_event"),
            node("end_yes", "end"),
            node("end_no", "end"),
        ],
        [
            edge("start", "cond"),
            edge("cond", "yes", handle="true"),
            edge("cond", "no", handle="false"),
            edge("yes", "end_yes"),
            edge("no", "end_no"),
        ]
    )


class TestConditionHandler:

    def test_true_branch_marks_false_branch_ignored(self, store, node_executors, condition_workflow):
        context = run_context(store, condition_workflow, {"submissionData": {"amount": 500}})
        result = node_executors.execute(store.get_node(condition_workflow, "cond"), context)

        assert result.success is True
        assert result.next_node_ids == ["yes"]
        assert result.output["conditionType"] == "legacy"
        assert result.output["conditionResult"] is True
        assert result.output["nextPath"] == "true"
        assert result.output["ignoredNodes"] == 2

        logs = store.get_node_logs(context.execution_id)
        assert [log.node_id for log in logs] == ["no", "end_no"]
        assert all(log.status is NodeLogStatus.IGNORED for log in logs)
        assert logs[0].output_data == {"reason": "Condition TRUE - branch ignored"}

    def test_false_branch(self, store, node_executors, condition_workflow):
        context = run_context(store, condition_workflow, {"submissionData": {"amount": 5}})
        result = node_executors.execute(store.get_node(condition_workflow, "cond"), context)
        assert result.next_node_ids == ["no"]
        assert result.output["conditionResult"] is False
        reasons = {log.output_data["reason"] for log in store.get_node_logs(context.execution_id)}
        assert reasons == {"Condition FALSE - branch ignored"}

    def test_enhanced_condition_takes_precedence(self, store, node_executors):
        enhanced = {
            "systemType": "field_level",
            "fieldLevelCondition": {"fieldId": "dept", "operator": "==", "value": "sales"},
        }
        workflow_id = save_workflow(
            store,
            [
                node("cond", "condition", enhancedCondition=enhanced, conditionConfig=amount_condition()),
                node("yes", "end"),
                node("no", "end"),
            ],
            [edge("cond", "yes", handle="true"), edge("cond", "no", handle="false")]
        )
        context = run_context(store, workflow_id, {"submissionData": {"dept": "Sales"}})
        result = node_executors.execute(store.get_node(workflow_id, "cond"), context)
        assert result.output["conditionType"] == "enhanced"
        assert result.next_node_ids == ["yes"]

    def test_no_condition_defaults_to_true(self, store, node_executors):
        workflow_id = save_workflow(
            store,
            [node("cond", "condition"), node("yes", "end"), node("no", "end")],
            [edge("cond", "yes", handle="true"), edge("cond", "no", handle="false")]
        )
        context = run_context(store, workflow_id)
        result = node_executors.execute(store.get_node(workflow_id, "cond"), context)
        assert result.output["conditionType"] == "default"
        assert result.next_node_ids == ["yes"]

    def test_shared_downstream_node_is_not_ignored(self, store, node_executors):
        workflow_id = save_workflow(
            store,
            [
                node("cond", "condition", conditionConfig=amount_condition()),
                node("a", "action"),
                node("b", "action"),
                node("join", "notification"),
            ],
            [
                edge("cond", "a", handle="true"),
                edge("cond", "b", handle="false"),
                edge("a", "join"),
                edge("b", "join"),
            ]
        )
        context = run_context(store, workflow_id, {"submissionData": {"amount": 500}})
        node_executors.execute(store.get_node(workflow_id, "cond"), context)
        assert [log.node_id for log in store.get_node_logs(context.execution_id)] == ["b"]

    def test_loop_back_to_condition_is_not_ignored(self, store, node_executors):
        workflow_id = save_workflow(
            store,
            [
                node("cond", "condition", conditionConfig=amount_condition()),
                node("retry", "action"),
                node("done", "end"),
            ],
            [
                edge("cond", "done", handle="true"),
                edge("cond", "retry", handle="false"),
                edge("retry", "cond"),
            ]
        )
        context = run_context(store, workflow_id, {"submissionData": {"amount": 500}})
        node_executors.execute(store.get_node(workflow_id, "cond"), context)
        assert [log.node_id for log in store.get_node_logs(context.execution_id)] == ["retry"]

    def test_switch_routes_by_branch_label(self, store, node_executors):
        switch = {
            "type": "switch",
            "field": {"type": "form", "path": "tier"},
            "cases": [{"value": "gold", "path": "gold"}, {"value": "silver", "path": "silver"}],
            "defaultPath": "default",
        }
        workflow_id = save_workflow(
            store,
            [node("sw", "condition", conditionConfig=switch), node("g", "end"), node("s", "end"), node("d", "end")],
            [edge("sw", "g", handle="gold"), edge("sw", "s", handle="silver"), edge("sw", "d")]
        )
        context = run_context(store, workflow_id, {"submissionData": {"tier": "silver"}})
        result = node_executors.execute(store.get_node(workflow_id, "sw"), context)

        assert result.next_node_ids == ["s"]
        assert result.output["nextPath"] == "silver"
        logs = store.get_node_logs(context.execution_id)
        assert sorted(log.node_id for log in logs) == ["d", "g"]
        assert logs[0].output_data == {"reason": "Condition SILVER - branch ignored"}

    def test_evaluation_error_fails_the_node(self, store, node_executors):
        workflow_id = save_workflow(
            store,
            [node("cond", "condition", conditionConfig={"type": "loop"}), node("yes", "end")],
            [edge("cond", "yes")]
        )
        context = run_context(store, workflow_id)
        result = node_executors.execute(store.get_node(workflow_id, "cond"), context)
        assert result.success is False
        assert result.error == "Unknown condition type: loop"

    def test_missing_value_suspends_execution(self, store, node_executors, condition_workflow):
        context = run_context(store, condition_workflow, {"submissionData": {}})
        result = node_executors.execute(store.get_node(condition_workflow, "cond"), context)

        assert result.success is True
        assert result.waiting is True
        assert result.output["waitingFields"] == ["amount"]

        record = store.get_execution(context.execution_id)
        assert record.status is ExecutionStatusEnum.WAITING
        assert record.wait_node_id == "cond"
        assert record.wait_config == {"waitType": "condition_value", "waitingFields": ["amount"]}
        assert record.scheduled_resume_at is None
        assert store.get_node_logs(context.execution_id) == []

    def test_missing_value_takes_false_branch_when_configured(self, store, action_registry, clock, condition_workflow):
        config = AppConfig(condition_waiting_policy=ConditionWaitingPolicy.FALSE_BRANCH)
        executors = NodeExecutors(store, action_registry=action_registry, config=config, clock=clock)
        context = run_context(store, condition_workflow, {"submissionData": {}})
        result = executors.execute(store.get_node(condition_workflow, "cond"), context)

        assert result.waiting is False
        assert result.next_node_ids == ["no"]
        assert store.get_execution(context.execution_id).status is ExecutionStatusEnum.RUNNING


def wait_workflow(store, **config):
    return save_workflow(
        store,
        [node("start", "start"), node("wait", "wait", **config), node("end", "end")],
        [edge("start", "wait"), edge("wait", "end")]
    )


class TestWaitHandler:

    def test_duration_wait(self, store, node_executors):
        workflow_id = wait_workflow(store, waitType="duration", durationValue=2, durationUnit="hours")
        context = run_context(store, workflow_id)
        result = node_executors.execute(store.get_node(workflow_id, "wait"), context)

        assert result.waiting is True
        assert result.output["scheduledResumeAt"] == (FIXED_NOW + timedelta(hours=2)).isoformat()
        record = store.get_execution(context.execution_id)
        assert record.status is ExecutionStatusEnum.WAITING
        assert record.scheduled_resume_at == FIXED_NOW + timedelta(hours=2)
        assert record.wait_config["waitType"] == "duration"
        assert record.wait_config["durationValue"] == 2

    @pytest.mark.parametrize("config,expected", [
        ({"waitDuration": 3, "waitUnit": "day"}, timedelta(days=3)),
        ({"durationValue": "1.5", "durationUnit": "Weeks"}, timedelta(weeks=1.5)),
        ({"durationValue": 45}, timedelta(minutes=45)),
    ])
    def test_duration_units(self, store, node_executors, config, expected):
        workflow_id = wait_workflow(store, **config)
        context = run_context(store, workflow_id)
        node_executors.execute(store.get_node(workflow_id, "wait"), context)
        assert store.get_execution(context.execution_id).scheduled_resume_at == FIXED_NOW + expected

    def test_past_until_date_continues_immediately(self, store, node_executors):
        workflow_id = wait_workflow(store, waitType="until_date", untilDate="2024-01-01T00:00:00Z")
        context = run_context(store, workflow_id)
        result = node_executors.execute(store.get_node(workflow_id, "wait"), context)

        assert result.waiting is False
        assert result.output["waited"] is False
        assert result.next_node_ids == ["end"]
        assert store.get_execution(context.execution_id).status is ExecutionStatusEnum.RUNNING

    def test_future_until_date(self, store, node_executors):
        workflow_id = wait_workflow(store, waitType="until_date", untilDate="2024-07-01T12:00:00+02:00")
        context = run_context(store, workflow_id)
        result = node_executors.execute(store.get_node(workflow_id, "wait"), context)
        assert result.waiting is True
        record = store.get_execution(context.execution_id)
        assert record.scheduled_resume_at.isoformat() == "2024-07-01T10:00:00"

    def test_until_event_uses_ceiling(self, store, node_executors):
        workflow_id = wait_workflow(store, waitType="until_event", eventType="manager_signed")
        context = run_context(store, workflow_id)
        result = node_executors.execute(store.get_node(workflow_id, "wait"), context)
        assert result.output["eventType"] == "manager_signed"
        record = store.get_execution(context.execution_id)
        assert record.scheduled_resume_at == FIXED_NOW + timedelta(days=365)
        assert record.wait_config["eventType"] == "manager_signed"

    def test_until_event_without_event_type_parks_with_ceiling(self, store, node_executors):
        workflow_id = wait_workflow(store, waitType="until_event")
        context = run_context(store, workflow_id)
        result = node_executors.execute(store.get_node(workflow_id, "wait"), context)
        assert result.success is True
        assert result.waiting is True
        assert "eventType" not in result.output
        record = store.get_execution(context.execution_id)
        assert record.status is ExecutionStatusEnum.WAITING
        assert record.scheduled_resume_at == FIXED_NOW + timedelta(days=365)
        assert "eventType" not in record.wait_config

    @pytest.mark.parametrize("config,error", [
        ({"waitType": "forever"}, "Unknown wait type: forever"),
        ({"waitType": "duration"}, "Wait duration is not configured"),
        ({"durationValue": "soon"}, "Invalid wait duration: soon"),
        ({"durationValue": 0}, "Wait duration must be positive"),
        ({"durationValue": 1, "durationUnit": "fortnight"}, "Unknown duration unit: fortnight"),
        ({"waitType": "until_date", "untilDate": "next tuesday"}, "Invalid untilDate: next tuesday"),
        ({"waitType": "condition_value"}, "Wait type condition_value cannot be configured on a wait node"),
    ])
    def test_invalid_configuration_fails_the_node(self, store, node_executors, config, error):
        workflow_id = wait_workflow(store, **config)
        context = run_context(store, workflow_id)
        result = node_executors.execute(store.get_node(workflow_id, "wait"), context)
        assert result.success is False
        assert result.error == error
        assert store.get_execution(context.execution_id).status is ExecutionStatusEnum.RUNNING

    def test_wait_on_finished_execution_fails(self, store, node_executors):
        workflow_id = wait_workflow(store, durationValue=5)
        context = run_context(store, workflow_id)
        store.finalize_execution(context.execution_id, ExecutionStatusEnum.FAILED, "stopped")
        result = node_executors.execute(store.get_node(workflow_id, "wait"), context)
        assert result.success is False
        assert result.error == "Execution is no longer running"
