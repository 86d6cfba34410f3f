"""Tests for the Iteration node and the engine driving its body."""

import pytest

from flowengine.core.iteration import (
    IterationConfig,
    IterationNodeExecutor,
    load_iteration_config,
)


@pytest.fixture
def iteration_data():
    return {
        "iterator_selector": ["start", "cities"],
        "output_selector": ["body_var", "shout"],
        "start_node_id": "body_var",
    }


@pytest.fixture
def iteration_flow(make_node, make_edge, make_flow, iteration_data):
    """start -> iter -> end, with a one-node body that shouts each item."""
    return make_flow(
        [
            make_node("start", "start", {"variables": [{"variable": "cities", "default": ["a", "b"]}]}),
            make_node("iter", "iteration", iteration_data),
            make_node(
                "body_var",
                "variable",
                {"assignments": [{"name": "shout", "value": "{{#iter.item#}}!"}]},
                parent_id="iter",
            ),
            make_node(
                "end", "end", {"outputs": [{"variable": "result", "value_selector": ["iter", "output"]}]}
            ),
        ],
        [make_edge("start", "iter"), make_edge("iter", "end")],
    )


class TestIterationConfig:
    def test_collect_advances(self):
        config = IterationConfig(
            iterator_array=["x", "y"],
            start_node_id="b",
            output_node_id="b",
            output_var_name="v",
            total_count=2,
        )

        assert config.current_item() == "x"
        config.collect("X")

        assert config.current_index == 1
        assert config.output_array == ["X"]
        assert not config.is_exhausted
        config.collect("Y")
        assert config.is_exhausted


class TestIterationExecutor:
    @pytest.mark.asyncio
    async def test_prepares_config(self, make_node, state, iteration_data):
        state.set_variable("#start.cities#", ["a", "b", "c"])

        result = await IterationNodeExecutor().execute(make_node("iter", "iteration", iteration_data), state)

        assert result.output == {
            "message": "Iteration prepared",
            "iteration_count": 3,
            "start_node_id": "body_var",
        }
        assert state.get_variable("#iter.iteration_count#") == 3
        config = load_iteration_config(state, "iter")
        assert config.iterator_array == ["a", "b", "c"]
        assert config.output_node_id == "body_var"
        assert config.output_var_name == "shout"

    @pytest.mark.asyncio
    async def test_iterator_not_an_array(self, make_node, state, iteration_data):
        state.set_variable("#start.cities#", "a,b")

        result = await IterationNodeExecutor().execute(make_node("iter", "iteration", iteration_data), state)

        assert result.error == "Iterator variable '#start.cities#' not found or not an array"

    @pytest.mark.parametrize(
        "missing, error",
        [
            ("iterator_selector", "Iteration node missing 'iterator_selector' field"),
            ("output_selector", "Iteration node missing 'output_selector' field"),
            ("start_node_id", "Iteration node missing 'start_node_id' field"),
        ],
    )
    @pytest.mark.asyncio
    async def test_missing_fields(self, make_node, state, iteration_data, missing, error):
        state.set_variable("#start.cities#", [])
        del iteration_data[missing]

        result = await IterationNodeExecutor().execute(make_node("iter", "iteration", iteration_data), state)

        assert result.is_failed
        assert result.error == error

    @pytest.mark.asyncio
    async def test_malformed_selector(self, make_node, state, iteration_data):
        iteration_data["output_selector"] = ["only_one"]
        state.set_variable("#start.cities#", [])

        result = await IterationNodeExecutor().execute(make_node("iter", "iteration", iteration_data), state)

        assert result.error == "output_selector must have exactly 2 elements [node_id, variable_name]"


class TestIterationRun:
    @pytest.mark.asyncio
    async def test_body_runs_once_per_item(self, basic_engine, execution, iteration_flow):
        """Outputs are collected in item order and exposed as #iter.output#."""
        state = await basic_engine.execute(execution, iteration_flow)

        assert state.get_variable("#iter.output#") == ["a!", "b!"]
        assert state.get_variable("outputs") == {"result": ["a!", "b!"]}
        assert state.visited_nodes == ["start", "iter", "body_var", "body_var", "end"]
        assert execution.is_completed

    @pytest.mark.asyncio
    async def test_empty_array_skips_body(self, basic_engine, execution, iteration_flow):
        state = await basic_engine.execute(execution, iteration_flow, {"cities": []})

        assert state.get_variable("#iter.output#") == []
        assert "body_var" not in state.visited_nodes

    @pytest.mark.asyncio
    async def test_last_item_and_index_visible(self, basic_engine, execution, iteration_flow):
        state = await basic_engine.execute(execution, iteration_flow, {"cities": ["x", "y", "z"]})

        assert state.get_variable("#iter.item#") == "z"
        assert state.get_variable("#iter.index#") == 2
        assert load_iteration_config(state, "iter").is_exhausted
