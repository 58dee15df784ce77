from .base import BaseNode, NodeDependencies
from .memory import MemoryRecallNode
from .overlord import OverlordPlannerNode, parse_overlord_directive
from .strategic_critic import StrategicCriticNode
from .strategic_planner import StrategicPlannerNode
from .tactical_critic import TacticalCriticNode
from .tactical_executor import TacticalExecutorNode
from .tactical_planner import TacticalPlannerNode

__all__ = [
    "BaseNode",
    "MemoryRecallNode",
    "NodeDependencies",
    "OverlordPlannerNode",
    "StrategicCriticNode",
    "StrategicPlannerNode",
    "TacticalCriticNode",
    "TacticalExecutorNode",
    "TacticalPlannerNode",
    "parse_overlord_directive",
]
