import os
import time
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from langgraph.graph import StateGraph, START, END
from dotenv import load_dotenv

# Load environment variables before the collaborators read them
load_dotenv()

from funnel.state import LeadState
from funnel.nodes.capture import capture
from funnel.nodes.relay import dedupe, relay, idem
from tools.webhook import webhook_relay

# Configure logging
logger.add("logs/app.log", rotation="1 day", retention="7 days", level="INFO")

# Initialize FastAPI app
app = FastAPI(
    title="Deal Funnel Lead Relay",
    description="Lead capture relay for the deal funnel",
    version="1.0.0"
)


# Build the LangGraph workflow
def build_workflow():
    """Build the lead relay workflow."""
    workflow = StateGraph(LeadState)

    # Add nodes
    workflow.add_node("capture", capture)
    workflow.add_node("dedupe", dedupe)
    workflow.add_node("relay", relay)

    workflow.add_edge(START, "capture")

    def after_capture(state: LeadState) -> str:
        return "dedupe" if state.get("valid") else "reject"

    def after_dedupe(state: LeadState) -> str:
        return "skip" if state.get("duplicate") else "relay"

    workflow.add_conditional_edges("capture", after_capture, {"dedupe": "dedupe", "reject": END})
    workflow.add_conditional_edges("dedupe", after_dedupe, {"relay": "relay", "skip": END})
    workflow.add_edge("relay", END)

    return workflow.compile()


# Initialize workflow
app_graph = build_workflow()


@app.post("/api/lead")
async def ingest_lead(req: Request):
    """
    Lead capture endpoint. Always reports success once the email is valid,
    whether or not the downstream webhook accepted the lead.

    Expected payload:
    {
        "email": "jane@example.com",
        "zip": "90210",
        "name": "Jane Doe",
        "phone": "555-0100",
        "source": "dashboard"
    }
    """
    start_time = time.time()

    try:
        payload = await req.json()
        if not isinstance(payload, dict):
            payload = {}

        initial_state = {
            "raw": payload,
            "errors": []
        }
        result = await app_graph.ainvoke(initial_state)

        if not result.get("valid"):
            return JSONResponse(status_code=400, content={"error": "Invalid email address"})

        if result.get("duplicate"):
            message = "Lead already received"
        elif not result.get("webhook_configured"):
            message = "Lead received (webhook not configured)"
        else:
            message = "Lead received"

        processing_time = time.time() - start_time
        logger.info(f"Lead processed in {processing_time:.2f}s: relayed={result.get('relayed', False)}")

        return JSONResponse(status_code=200, content={"success": True, "message": message})

    except Exception as e:
        logger.error(f"Error processing lead: {e}")
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/health")
def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": "1.0.0",
        "services": {
            "redis": "connected" if idem.r else "disconnected",
            "webhook": "configured" if webhook_relay.configured else "not_configured",
            "workflow": "ready"
        }
    }


# Error handlers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn

    # Create logs directory if it doesn't exist
    os.makedirs("logs", exist_ok=True)

    logger.info("Starting Deal Funnel Lead Relay")

    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        log_level="info"
    )
