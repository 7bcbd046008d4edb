"""Pipeline orchestration and registration bookkeeping."""

from histostack.pipeline.ledger import RegistrationLedger
from histostack.pipeline.orchestrator import StackOrchestrator

__all__ = ['RegistrationLedger', 'StackOrchestrator']
