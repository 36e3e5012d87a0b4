#!/usr/bin/env python3
"""
Adaptive Pipeline Demo

Runs a small ingest pipeline through the GraphExecutor with a
MonitoringHook attached:

  fetch → validate → summarize ─┬─(ok)──────→ publish
                                └─(invalid)─→ quarantine

The edge out of a node is chosen from the state that node receives, so the
validation result routes the edge leaving summarize.

The fetch step fails on its first call. The FailureRecoveryEngine's
simple-retry handler retries it, the PerformanceMonitor records each node
as a task event, and the PlanAdjustmentEngine proposes adjustments for the
high-priority plan.

Usage:
    cd core
    python demos/adaptive_pipeline_demo.py
"""

import asyncio
import json
import logging
import sys
from pathlib import Path

# Allow running from a source checkout without installing
_CORE_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_CORE_DIR))

from adaptflow import END, START, EventBus, GraphExecutor, GraphSpec  # noqa: E402
from adaptflow.monitoring import (  # noqa: E402
    FailureRecoveryEngine,
    MonitoringHook,
    PerformanceMonitor,
    PlanAdjustmentEngine,
    PlanStep,
    RecoveryContext,
    TaskPlan,
)
from adaptflow.observability import configure_logging  # noqa: E402
from adaptflow.runtime.event_bus import EngineEvent, EventType  # noqa: E402

logger = logging.getLogger("adaptive_pipeline_demo")

TASK_ID = "ingest-42"

THRESHOLDS = {
    "optimal": 100,
    "good": 90,
    "acceptable": 75,
    "concerning": 50,
    "problematic": 25,
    "critical": 0,
}

# -------------------------------------------------------------------------
# Pipeline steps
# -------------------------------------------------------------------------

_fetch_calls = 0


def fetch_records() -> list[dict]:
    global _fetch_calls
    _fetch_calls += 1
    if _fetch_calls == 1:
        raise ConnectionError("upstream reset the connection")
    return [{"id": i, "amount": i * 10} for i in range(1, 6)]


def fetch(state: dict) -> dict:
    return {"records": fetch_records()}


def validate(state: dict) -> dict:
    records = state.get("records") or []
    return {"valid": bool(records) and all(r["amount"] >= 0 for r in records)}


def summarize(state: dict) -> dict:
    return {"record_count": len(state.get("records") or [])}


def publish(state: dict) -> dict:
    total = sum(r["amount"] for r in state["records"])
    return {"published_total": total}


def quarantine(state: dict) -> dict:
    return {"quarantined": True}


def route(state: dict) -> str:
    return "ok" if state.get("valid") else "invalid"


# -------------------------------------------------------------------------
# Recovery handler
# -------------------------------------------------------------------------

recovered: dict[str, list[dict]] = {}


async def retry_fetch(context: RecoveryContext) -> bool:
    """Re-run the failed fetch; the records are kept for the next step."""
    logger.info(
        f"Retrying {context.affected_component} "
        f"(attempt {context.retry_count + 1}/{context.max_retries + 1})"
    )
    try:
        recovered[context.failure_id] = fetch_records()
    except ConnectionError:
        return False
    return True


def recovered_records(previous: dict, new: dict, node_id: str) -> dict:
    """Put records fetched during recovery back into the state."""
    if node_id != "fetch" or new.get("records"):
        return new
    for record in new.get("recoveries") or []:
        if record["success"] and record["failure_id"] in recovered:
            return {**new, "records": recovered[record["failure_id"]]}
    return new


# -------------------------------------------------------------------------
# Main
# -------------------------------------------------------------------------


async def main():
    configure_logging(level="INFO", format="human")

    monitor = PerformanceMonitor()

    adjustments = PlanAdjustmentEngine(monitor)
    adjustments.register_task_plan(
        TaskPlan(
            task_id=TASK_ID,
            name="Nightly ingest",
            priority=9,
            steps=[PlanStep(id=s) for s in ("fetch", "validate", "summarize", "publish")],
        )
    )

    recovery = FailureRecoveryEngine(monitor)
    recovery.register_handler("simple-retry", retry_fetch)

    graph = (
        GraphSpec(id="ingest")
        .add_node("fetch", fetch)
        .add_node("validate", validate)
        .add_node("summarize", summarize)
        .add_node("publish", publish)
        .add_node("quarantine", quarantine)
        .add_edge(START, "fetch")
        .add_edge("fetch", "validate")
        .add_edge("validate", "summarize")
        .add_conditional_edge(
            "summarize", route, path_map={"ok": "publish", "invalid": "quarantine"}
        )
        .add_edge("publish", END)
        .add_edge("quarantine", END)
        .compile()
    )

    hook = MonitoringHook.for_graph(graph, monitor, adjustments, recovery, task_id=TASK_ID)

    async def hooked(previous: dict, new: dict, node_id: str) -> dict:
        return recovered_records(previous, await hook(previous, new, node_id), node_id)

    graph.set_transition_hook(hooked)

    bus = EventBus()

    async def on_edge(event: EngineEvent) -> None:
        logger.info(f"edge {event.node_id} → {event.data['target']}")

    bus.subscribe([EventType.EDGE_TRAVERSED], on_edge)

    result = await GraphExecutor(event_bus=bus).run(graph, {"source": "s3://bucket/ingest"})
    hook.record_completion(result.completed)
    monitor.register_metric(
        {
            "id": "run_success_rate",
            "name": "run success rate",
            "value": 100 if result.is_clean else 100 - 20 * len(result.errors),
            "unit": "%",
            "thresholds": THRESHOLDS,
        }
    )

    print()
    print(f"Halt reason:   {result.halt_reason}")
    print(f"Path:          {' → '.join(result.path)}")
    print(f"Published:     {result.state.get('published_total')}")
    print(f"Node errors:   {len(result.errors)}")
    print(f"Recoveries:    {json.dumps(result.state.get('recoveries'), indent=2)}")
    print(f"Adjustments:   {[a['type'] for a in result.state.get('plan_adjustments', [])]}")
    report = monitor.get_system_performance_report()
    print(f"System status: {report['overall_status']}")
    print(f"Tasks:         {report['tasks_by_status']}")


if __name__ == "__main__":
    asyncio.run(main())
