"""Order lifecycle primitives shared by the buy/sell and swap flows."""

from tradeflow.execution.events import EventBus, FlowEvent, FlowEventKind, race_first
from tradeflow.execution.quotes import QuoteLoopManager, refresh_delay
from tradeflow.execution.rails import Rail, RailDecision, match_rail
from tradeflow.execution.retry import NotYet, PollSuperseded, RetryBudget, retry
from tradeflow.execution.state import FlowState
from tradeflow.execution.steps import Step, StepName

__all__ = [
    "EventBus",
    "FlowEvent",
    "FlowEventKind",
    "race_first",
    "QuoteLoopManager",
    "refresh_delay",
    "Rail",
    "RailDecision",
    "match_rail",
    "NotYet",
    "PollSuperseded",
    "RetryBudget",
    "retry",
    "FlowState",
    "Step",
    "StepName",
]
