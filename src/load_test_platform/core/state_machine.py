from enum import Enum
from typing import Dict, Optional, Set


class RunState(Enum):
    """编排状态"""
    IDLE = "idle"
    RUNNING = "running"
    RECOVERING = "recovering"  # 场景之间的恢复等待
    COMPLETED = "completed"
    FAILED = "failed"


class SpikePhase(Enum):
    """突刺测试阶段"""
    BASELINE = "baseline"
    SPIKE = "spike"
    COOL_DOWN = "cool_down"
    RECOVERY = "recovery"
    DONE = "done"


RUN_TRANSITIONS: Dict[Enum, Set[Enum]] = {
    RunState.IDLE: {RunState.RUNNING, RunState.FAILED},
    RunState.RUNNING: {RunState.RECOVERING, RunState.COMPLETED, RunState.FAILED},
    RunState.RECOVERING: {RunState.RUNNING, RunState.FAILED},
    RunState.COMPLETED: set(),
    RunState.FAILED: set(),
}

SPIKE_TRANSITIONS: Dict[Enum, Set[Enum]] = {
    SpikePhase.BASELINE: {SpikePhase.SPIKE},
    SpikePhase.SPIKE: {SpikePhase.COOL_DOWN},
    SpikePhase.COOL_DOWN: {SpikePhase.RECOVERY},
    SpikePhase.RECOVERY: {SpikePhase.DONE},
    SpikePhase.DONE: set(),
}


class StateMachine:
    """简单的状态机，阶段只能按转移表前进"""

    def __init__(self, initial_state: Enum = RunState.IDLE, transitions: Optional[Dict[Enum, Set[Enum]]] = None):
        self.state = initial_state
        self.transitions = transitions if transitions is not None else RUN_TRANSITIONS

    def can_transition(self, new_state: Enum) -> bool:
        """检查是否可以转移到新状态"""
        return new_state in self.transitions.get(self.state, set())

    def transition(self, new_state: Enum) -> None:
        """转移到新状态，非法转移直接报错"""
        if not self.can_transition(new_state):
            raise RuntimeError(f"Illegal transition {self.state.value} -> {new_state.value}")
        self.state = new_state
