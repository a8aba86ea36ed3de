"""
Goal-Based Orchestration

This package turns natural-language goals into dependency-aware execution
plans, runs them on pools of agents and learns from the execution history
with PostgreSQL-backed lessons.
"""

__version__ = "0.1.0"

# Agents
from goalflow.agents import AgentResult, AgentSlot, CallableAgent, SimulatedAgent

# Configuration
from goalflow.config import EngineConfig, Settings

# Core types
from goalflow.domain import (
    ExecutionPlan,
    ExecutionRecord,
    Lesson,
    ParsedGoal,
    PlanStatus,
    Task,
    TaskStatus,
)

# Execution
from goalflow.engine import ExecutionReport, OrchestratorEngine
from goalflow.events import EventStream, EventType, OrchestratorEvent

# Planning and learning
from goalflow.goal_parser import GoalParser
from goalflow.learning import LearningService
from goalflow.optimizer import AdaptationTrigger, ExecutionOptimizer, OptimizationStrategy
from goalflow.plan_generator import PlanGenerator
from goalflow.retry import CircuitBreaker, RetryPolicy
from goalflow.store import InMemoryLearningStore, SqlLearningStore

__all__ = [
    # Version
    "__version__",
    # Types
    "ExecutionPlan",
    "ExecutionRecord",
    "Lesson",
    "ParsedGoal",
    "PlanStatus",
    "Task",
    "TaskStatus",
    # Config
    "EngineConfig",
    "Settings",
    # Planning
    "GoalParser",
    "PlanGenerator",
    "ExecutionOptimizer",
    "OptimizationStrategy",
    "AdaptationTrigger",
    # Execution
    "OrchestratorEngine",
    "ExecutionReport",
    "EventStream",
    "EventType",
    "OrchestratorEvent",
    "RetryPolicy",
    "CircuitBreaker",
    # Agents
    "AgentResult",
    "AgentSlot",
    "CallableAgent",
    "SimulatedAgent",
    # Learning
    "LearningService",
    "InMemoryLearningStore",
    "SqlLearningStore",
]
