"""Tests for business-action preconditions and adapter routing."""
import pytest
from unittest.mock import AsyncMock

from flows.actions import (
    PORT_FAILURE, PORT_NEED_REASON, PORT_SUCCESS,
    check_preconditions, counter_variable_for, get_profile, normalize_action_name,
    success_patch,
)
from flows.errors import LimitExceededError, TransientExternalError
from flows.executor import NodeExecutor
from models.schemas import (
    ActionOutcome, ActionOutputs, BusinessActionData, ConversationContext, Fail, Node,
    SenderType,
)


def action_node(data: dict) -> Node:
    return Node.model_validate({"id": "b1", "type": "business-action", "data": data})


@pytest.fixture
def adapter():
    mock = AsyncMock()
    mock.execute.return_value = ActionOutcome(port=PORT_SUCCESS)
    return mock


@pytest.fixture
def action_executor(adapter, engine_config):
    return NodeExecutor(action_adapter=adapter, config=engine_config)


class TestProfiles:

    def test_action_names_normalized(self):
        assert normalize_action_name("Reschedule_Appointment") == "reschedule-appointment"
        assert get_profile("cancel_appointment").name == "cancel-appointment"
        assert get_profile("something-else").name == "generic"

    def test_success_patch_increments_counter(self):
        profile = get_profile("reschedule-appointment")
        assert success_patch(profile, BusinessActionData(), {"rescheduleCount": 2}) == {
            "rescheduleCount": 3, "appointmentRescheduled": True,
        }

    def test_generic_profile_has_no_patch(self):
        assert success_patch(get_profile("generic"), BusinessActionData(), {}, "b1") == {}

    def test_generic_profile_counts_when_limited(self):
        data = BusinessActionData.model_validate({"maxAttempts": 2})
        assert counter_variable_for(get_profile("send-quote"), data, "b1") == "b1_attempts"
        assert success_patch(get_profile("send-quote"), data, {"b1_attempts": 1}, "b1") == {
            "b1_attempts": 2,
        }


class TestPreconditions:

    def test_missing_required_field(self):
        profile = get_profile("reschedule-appointment")
        blocked = check_preconditions(profile, BusinessActionData(), {})
        assert blocked.port == PORT_FAILURE
        assert blocked.reason == "missing_fields"

    def test_limit_reached_raises(self):
        profile = get_profile("reschedule-appointment")
        data = BusinessActionData.model_validate({"max_reschedule_attempts": 1})
        with pytest.raises(LimitExceededError) as exc:
            check_preconditions(profile, data, {"appointmentId": "A1", "rescheduleCount": 1}, "b1")
        assert exc.value.attempts == 1
        assert exc.value.limit == 1
        assert exc.value.node_id == "b1"

    def test_default_limit_applies(self):
        profile = get_profile("reschedule-appointment")
        with pytest.raises(LimitExceededError):
            check_preconditions(profile, BusinessActionData(),
                                {"appointmentId": "A1", "rescheduleCount": 3})

    def test_reason_required(self):
        profile = get_profile("cancel-appointment")
        data = BusinessActionData.model_validate({"requireReason": True})
        blocked = check_preconditions(profile, data, {"appointmentId": "A1"})
        assert blocked.port == PORT_NEED_REASON

    def test_reason_present_passes(self):
        profile = get_profile("cancel-appointment")
        data = BusinessActionData.model_validate({"requireReason": True})
        assert check_preconditions(profile, data, {
            "appointmentId": "A1", "cancellationReason": "sick",
        }) is None

    def test_node_required_fields_override_profile(self):
        profile = get_profile("book-appointment")
        data = BusinessActionData.model_validate({"requiredFields": ["email"]})
        assert check_preconditions(profile, data, {"email": " "}).port == PORT_FAILURE
        assert check_preconditions(profile, data, {"email": "a@b.c"}) is None


class TestBusinessActionExecution:

    @pytest.mark.asyncio
    async def test_limit_reached_routes_failure_without_adapter_call(self, action_executor, adapter):
        node = action_node({"action": "reschedule-appointment", "max_reschedule_attempts": 1})
        ctx = ConversationContext(variables={"appointmentId": "A1", "rescheduleCount": 1})
        result = await action_executor.execute(node, ctx, tenant_id="acme")
        adapter.execute.assert_not_called()
        assert result.transition.port == PORT_FAILURE
        assert result.metadata["error"] == "limit_exceeded"
        assert len(result.messages) == 1

    @pytest.mark.asyncio
    async def test_missing_field_routes_failure_without_adapter_call(self, action_executor, adapter):
        node = action_node({"action": "cancel-appointment"})
        result = await action_executor.execute(node, ConversationContext(), tenant_id="acme")
        adapter.execute.assert_not_called()
        assert result.transition.port == PORT_FAILURE

    @pytest.mark.asyncio
    async def test_need_reason(self, action_executor, adapter):
        node = action_node({"action": "cancel-appointment", "requireReason": True})
        ctx = ConversationContext(variables={"appointmentId": "A1"})
        result = await action_executor.execute(node, ctx)
        adapter.execute.assert_not_called()
        assert result.transition.port == PORT_NEED_REASON

    @pytest.mark.asyncio
    async def test_success_merges_outputs_and_counters(self, action_executor, adapter):
        adapter.execute.return_value = ActionOutcome(
            port=PORT_SUCCESS,
            outputs=ActionOutputs(message="Moved {{appointmentId}} to {{newDate}}",
                                  context_patch={"newDate": "Monday"}),
        )
        node = action_node({"action": "reschedule-appointment", "calendar": "main"})
        ctx = ConversationContext(variables={"appointmentId": "A1"})
        result = await action_executor.execute(node, ctx, tenant_id="acme")

        tenant, variables, config = adapter.execute.call_args.args
        assert tenant == "acme"
        assert variables == {"appointmentId": "A1"}
        assert config["calendar"] == "main"
        assert result.transition.port == PORT_SUCCESS
        assert result.context_patch == {
            "newDate": "Monday", "rescheduleCount": 1, "appointmentRescheduled": True,
        }
        assert result.messages[0].content == "Moved A1 to Monday"

    @pytest.mark.asyncio
    async def test_success_default_message(self, action_executor):
        node = action_node({"action": "book-appointment"})
        result = await action_executor.execute(node, ConversationContext())
        assert result.messages[0].content == action_executor.config.business_success_message

    @pytest.mark.asyncio
    async def test_transient_error_routes_failure(self, action_executor, adapter):
        adapter.execute.side_effect = TransientExternalError("backend down")
        node = action_node({"action": "book-appointment", "failure_message": "Try later"})
        result = await action_executor.execute(node, ConversationContext())
        assert result.transition.port == PORT_FAILURE
        assert result.messages[0].content == "Try later"

    @pytest.mark.asyncio
    async def test_unexpected_error_routes_failure(self, action_executor, adapter):
        adapter.execute.side_effect = RuntimeError("bug")
        result = await action_executor.execute(action_node({"action": "x"}), ConversationContext())
        assert result.transition.port == PORT_FAILURE
        assert result.messages[0].content == action_executor.config.business_failure_message

    @pytest.mark.asyncio
    async def test_dict_outcome_accepted(self, action_executor, adapter):
        adapter.execute.return_value = {"nextNodeId": "failure",
                                        "outputs": {"message": "No slots"}}
        result = await action_executor.execute(action_node({"action": "x"}), ConversationContext())
        assert result.transition.port == PORT_FAILURE
        assert result.messages[0].content == "No slots"

    @pytest.mark.asyncio
    async def test_undeclared_port_is_contract_violation(self, action_executor, adapter):
        adapter.execute.return_value = ActionOutcome(port="maybe")
        result = await action_executor.execute(action_node({"action": "x"}), ConversationContext())
        assert isinstance(result.transition, Fail)
        assert "maybe" in result.transition.error
        assert result.messages[0].sender_id == SenderType.SYSTEM
        assert result.messages[0].content == action_executor.config.contract_violation_message

    @pytest.mark.asyncio
    async def test_no_adapter_routes_failure(self, engine_config):
        executor = NodeExecutor(config=engine_config)
        result = await executor.execute(action_node({"action": "x"}), ConversationContext())
        assert result.transition.port == PORT_FAILURE

    @pytest.mark.asyncio
    async def test_generic_action_limit_enforced(self, action_executor, adapter):
        node = action_node({"action": "send-quote", "maxAttempts": 1})
        ctx = ConversationContext()
        ports = []
        for _ in range(3):
            result = await action_executor.execute(node, ctx, tenant_id="acme")
            ports.append(result.transition.port)
            ctx = ConversationContext(variables={**ctx.variables, **result.context_patch})

        assert adapter.execute.await_count == 1
        assert ctx.variables["b1_attempts"] == 1
        assert ports == [PORT_SUCCESS, PORT_FAILURE, PORT_FAILURE]
