"""
Outcome types returned by the lifecycle services to the routes and the sweep.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from medconsult.store import Outcome


@dataclass
class MessageOutcome:
    accepted: bool
    status: str
    outcome: Outcome
    deadline: Optional[datetime] = None
    deadline_set: bool = False


@dataclass
class StatusSnapshot:
    session_id: int
    status: str
    remaining_time: Optional[int]  # seconds; None while no deadline is running
    remaining_units: int
    deadline: Optional[datetime] = None
    sessions_used: int = 0


@dataclass
class EndOutcome:
    units_charged: int
    final_status: str
    already_done: bool = False
    shortfall: int = 0
    amount: Decimal = Decimal("0.00")
    duration_seconds: int = 0


@dataclass
class TickOutcome:
    units_charged: int
    status: str
    ended: bool = False
    shortfall: int = 0
    auto_deductions_processed: int = 0
