"""Job lifecycle engine — state machine and reputation arithmetic."""

from gigledger.engine.job_state_machine import JobStateMachine
from gigledger.engine.reputation import updated_rating, validate_score

__all__ = ["JobStateMachine", "updated_rating", "validate_score"]
