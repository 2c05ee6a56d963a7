import logging
from langgraph.graph import StateGraph, END
from backend.assistant.state import AnalysisState
from backend.assistant.verdict import response_to_text, classify, build_draft

logger = logging.getLogger("AnalysisGraph")


def build_analysis_graph(validator):
    """validate -> classify -> draft, compiled around one validator instance."""

    # --- Nodes ---

    async def validate_node(state: AnalysisState):
        """Calls the external validator and stores its reply as chat text."""
        response = await validator.validate(
            state["trade_details"],
            state.get("rules", []),
            state.get("image"),
        )
        return {"response_text": response_to_text(response)}

    def classify_node(state: AnalysisState):
        result = classify(state["response_text"])
        logger.info(f"Verdict heuristic: {result}")
        return {"validation_result": result}

    def draft_node(state: AnalysisState):
        draft = build_draft(
            state["trade_details"],
            state["validation_result"],
            state["context"],
            state["current_input"],
            screenshot_url=state.get("image"),
        )
        return {"draft": draft}

    # --- Graph Definition ---

    workflow = StateGraph(AnalysisState)

    workflow.add_node("validate", validate_node)
    workflow.add_node("classify", classify_node)
    workflow.add_node("draft", draft_node)

    workflow.set_entry_point("validate")
    workflow.add_edge("validate", "classify")
    workflow.add_edge("classify", "draft")
    workflow.add_edge("draft", END)

    return workflow.compile()
