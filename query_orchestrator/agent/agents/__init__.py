# Agents package: one class per orchestration step
from query_orchestrator.agent.agents.base import AgentInput, AgentOutcome, BaseAgent
from query_orchestrator.agent.agents.cross_validation import CrossValidationAgent
from query_orchestrator.agent.agents.execution import (
    DocumentExecutionAgent,
    ExternalExecutionAgent,
    SourceExecutionAgent,
    StructuredExecutionAgent,
)
from query_orchestrator.agent.agents.guardrails import GuardrailsAgent
from query_orchestrator.agent.agents.hallucination import HallucinationCheckAgent
from query_orchestrator.agent.agents.intent import IntentValidationAgent
from query_orchestrator.agent.agents.query_optimization import QueryOptimizationAgent
from query_orchestrator.agent.agents.source_filter import SourceFilterAgent
from query_orchestrator.agent.agents.synthesis import SynthesisAgent
from query_orchestrator.agent.agents.visualization import VisualizationAgent

__all__ = [
    "AgentInput",
    "AgentOutcome",
    "BaseAgent",
    "CrossValidationAgent",
    "DocumentExecutionAgent",
    "ExternalExecutionAgent",
    "GuardrailsAgent",
    "HallucinationCheckAgent",
    "IntentValidationAgent",
    "QueryOptimizationAgent",
    "SourceExecutionAgent",
    "SourceFilterAgent",
    "StructuredExecutionAgent",
    "SynthesisAgent",
    "VisualizationAgent",
]
