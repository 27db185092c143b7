# tests/unit/test_state_merge.py
"""
State merger unit tests.

What is tested
--------------
- The merged state always has the three fixed nodes and two connections.
- Omitted nodes are carried forward unchanged; unknown/malformed entries are dropped.
- providedFields only grows, is limited to requiredFields, and ignores model `status`.
- Provision resolution order: providedFields, then requiredFields - missingFields,
  then non-empty config values.
- Fields claimed for a node behind the first incomplete node are dropped.
- requiredFields can only be replaced on a first-turn merge of an untouched node.
- Merging the current state's own wire shape is a no-op.
"""

from dataflow_agent.response_parser import decode_response
from dataflow_agent.state_merger import diff_provided, merge_state
from dataflow_agent.workflow_state import (
    NODE_ORDER,
    ConnectionStatus,
    NodeStatus,
    WorkflowState,
    new_workflow_state,
)


def _with(state: WorkflowState, node_id: str, **update) -> WorkflowState:
    nodes = [n.model_copy(update=update) if n.id == node_id else n for n in state.nodes]
    return WorkflowState(nodes=nodes)


def test_structure_is_rebuilt_from_partial_payload():
    merged = merge_state(new_workflow_state(), [{"id": "transform-node", "name": "Filter Orders"}])
    assert tuple(n.id for n in merged.nodes) == NODE_ORDER
    assert [c.id for c in merged.connections] == ["conn-1", "conn-2"]
    assert merged.node("transform-node").name == "Filter Orders"


def test_none_existing_and_empty_payload_gives_default_state():
    assert merge_state(None, None) == new_workflow_state()
    assert merge_state(None, []) == new_workflow_state()


def test_omitted_nodes_are_carried_forward():
    base = _with(new_workflow_state(), "source-node", provided_fields=["store_url"], config={"region": "us"})
    merged = merge_state(base, [{"id": "destination-node", "name": "Snowflake Destination"}])
    assert merged.node("source-node") == base.node("source-node")
    assert merged.node("destination-node").name == "Snowflake Destination"


def test_provided_fields_never_shrink():
    base = _with(new_workflow_state(), "source-node", provided_fields=["store_url", "api_key"])
    merged = merge_state(base, [{"id": "source-node", "providedFields": [], "missingFields": ["store_url"]}])
    assert merged.node("source-node").provided_fields == ["store_url", "api_key"]


def test_model_status_is_never_trusted():
    merged = merge_state(
        new_workflow_state(),
        [{"id": "source-node", "status": "complete", "providedFields": ["store_url"]}],
    )
    node = merged.node("source-node")
    assert node.status == NodeStatus.PARTIAL
    assert node.missing_fields == ["api_key", "api_secret"]


def test_unknown_field_names_are_ignored_and_order_follows_required():
    merged = merge_state(
        new_workflow_state(),
        [{"id": "source-node", "providedFields": ["api_secret", "bogus", "store_url"]}],
    )
    assert merged.node("source-node").provided_fields == ["store_url", "api_secret"]


def test_missing_fields_only_implies_the_rest_are_provided():
    merged = merge_state(new_workflow_state(), [{"id": "source-node", "missingFields": ["api_secret"]}])
    assert merged.node("source-node").provided_fields == ["store_url", "api_key"]


def test_config_values_are_the_last_resort_and_config_is_preserved():
    base = _with(new_workflow_state(), "source-node", config={"region": "us"})
    merged = merge_state(
        base,
        [{"id": "source-node", "config": {"store_url": "https://a.myshopify.com", "api_key": "  "}}],
    )
    node = merged.node("source-node")
    assert node.provided_fields == ["store_url"]
    assert node.config == {"region": "us", "store_url": "https://a.myshopify.com", "api_key": "  "}


def test_role_names_and_types_resolve_to_fixed_ids():
    merged = merge_state(
        new_workflow_state(),
        [
            {"id": "source", "providedFields": ["store_url"]},
            {"id": "Transform", "name": "Filter Orders"},
            {"id": "dest-1", "type": "destination", "name": "Snowflake Destination"},
            {"id": "sink-node", "name": "Ignored"},
        ],
    )
    assert merged.node("source-node").provided_fields == ["store_url"]
    assert merged.node("transform-node").name == "Filter Orders"
    assert merged.node("destination-node").name == "Snowflake Destination"


def test_malformed_entries_are_dropped():
    merged = merge_state(new_workflow_state(), ["oops", {"name": "no id"}, 42])
    assert merged == new_workflow_state()


def test_first_turn_may_adopt_a_field_template():
    merged = merge_state(
        None,
        [
            {
                "id": "source-node",
                "name": "Salesforce Source",
                "requiredFields": ["instance_url", "username", "password"],
                "providedFields": [],
            }
        ],
        adopt_templates=True,
    )
    node = merged.node("source-node")
    assert node.name == "Salesforce Source"
    assert node.required_fields == ["instance_url", "username", "password"]
    assert node.status == NodeStatus.PENDING


def test_later_turns_keep_required_fields():
    base = new_workflow_state()
    merged = merge_state(base, [{"id": "source-node", "requiredFields": ["instance_url"]}])
    assert merged.node("source-node").required_fields == ["store_url", "api_key", "api_secret"]


def test_adoption_skips_nodes_with_provided_fields():
    base = _with(new_workflow_state(), "source-node", provided_fields=["store_url"])
    merged = merge_state(base, [{"id": "source-node", "requiredFields": ["x"]}], adopt_templates=True)
    assert merged.node("source-node").required_fields == ["store_url", "api_key", "api_secret"]


def test_merging_own_wire_shape_is_idempotent():
    base = _with(new_workflow_state(), "source-node", provided_fields=["store_url"], config={"store_url": "v"})
    base = _with(base, "transform-node", name="Filter Orders")
    merged = merge_state(base, [n.to_wire() for n in base.nodes])
    assert merged == base


def test_input_state_is_not_mutated():
    base = new_workflow_state()
    merge_state(base, [{"id": "source-node", "providedFields": ["store_url"]}])
    assert base.node("source-node").provided_fields == []


def test_connections_follow_source_node_completion():
    merged = merge_state(
        new_workflow_state(),
        [{"id": "source-node", "providedFields": ["store_url", "api_key", "api_secret"]}],
    )
    statuses = {c.id: c.status for c in merged.connections}
    assert statuses == {"conn-1": ConnectionStatus.COMPLETE, "conn-2": ConnectionStatus.PENDING}
    assert merged.complete is False


def test_diff_provided_reports_only_new_fields():
    before = _with(new_workflow_state(), "source-node", provided_fields=["store_url"])
    after = merge_state(before, [{"id": "source-node", "providedFields": ["store_url", "api_key"]}])
    assert diff_provided(before, after) == {"source-node": ["api_key"]}
    assert diff_provided(None, before) == {"source-node": ["store_url"]}


def test_fields_for_later_nodes_are_dropped_while_source_is_incomplete():
    merged = merge_state(
        new_workflow_state(),
        [{"id": "transform-node", "providedFields": ["operation"], "config": {"operation": "filter"}}],
    )
    node = merged.node("transform-node")
    assert node.provided_fields == []
    assert node.status == NodeStatus.PENDING
    assert node.config == {"operation": "filter"}


def test_skip_ahead_keeps_what_later_nodes_already_had():
    base = _with(new_workflow_state(), "destination-node", provided_fields=["account_url"])
    merged = merge_state(base, [{"id": "destination-node", "providedFields": ["account_url", "username"]}])
    assert merged.node("destination-node").provided_fields == ["account_url"]


def test_completing_a_node_unlocks_the_next_in_the_same_merge():
    merged = merge_state(
        new_workflow_state(),
        [
            {"id": "source-node", "providedFields": ["store_url", "api_key", "api_secret"]},
            {"id": "transform-node", "providedFields": ["operation"]},
            {"id": "destination-node", "providedFields": ["username"]},
        ],
    )
    assert merged.node("source-node").status == NodeStatus.COMPLETE
    assert merged.node("transform-node").provided_fields == ["operation"]
    assert merged.node("destination-node").provided_fields == []


def test_type_only_entry_resolves_through_the_parser():
    payload = decode_response('{"message": "API key?", "nodes": [{"type": "source", "providedFields": ["store_url"]}]}')
    merged = merge_state(new_workflow_state(), payload.nodes)
    assert merged.node("source-node").provided_fields == ["store_url"]
