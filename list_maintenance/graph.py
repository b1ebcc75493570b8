from __future__ import annotations

from typing import Any

from langgraph.graph import END, START, StateGraph

from .nodes import MaintenanceNodes
from .state import MaintenanceState


def build_maintenance_graph(nodes: MaintenanceNodes) -> Any:
    graph = StateGraph(MaintenanceState)
    graph.add_node("fetch_state", nodes.fetch_state)
    graph.add_node("plan_suppression", nodes.plan_suppression)
    graph.add_node("apply_suppression", nodes.apply_suppression)
    graph.add_node("plan_rebalancing", nodes.plan_rebalancing)
    graph.add_node("apply_rebalancing", nodes.apply_rebalancing)
    graph.add_node("persist_log", nodes.persist_log)
    graph.add_node("rollback", nodes.rollback)

    def continue_unless_halted(next_node: str):
        def route(state: MaintenanceState) -> str:
            if state.get("halt"):
                return END
            return next_node

        return route

    def continue_unless_failed(next_node: str):
        def route(state: MaintenanceState) -> str:
            if state.get("needs_rollback"):
                return "rollback"
            return next_node

        return route

    graph.add_edge(START, "fetch_state")
    graph.add_conditional_edges("fetch_state", continue_unless_halted("plan_suppression"), ["plan_suppression", END])
    graph.add_conditional_edges("plan_suppression", continue_unless_halted("apply_suppression"), ["apply_suppression", END])
    graph.add_conditional_edges("apply_suppression", continue_unless_failed("plan_rebalancing"), ["plan_rebalancing", "rollback"])
    graph.add_conditional_edges("plan_rebalancing", continue_unless_failed("apply_rebalancing"), ["apply_rebalancing", "rollback"])
    graph.add_conditional_edges("apply_rebalancing", continue_unless_failed("persist_log"), ["persist_log", "rollback"])
    graph.add_edge("persist_log", END)
    graph.add_edge("rollback", END)
    return graph.compile()
