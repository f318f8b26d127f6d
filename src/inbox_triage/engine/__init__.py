"""Triage processing engines.

This package provides:
- Batch card assignment and resolution
- Direct per-item user actions (ingest, decide, declassify, move)
- The scheduled learning loop and suggestion review
- Behavioral rule proposals from repeated decisions
- The scheduled triage engine
"""

from inbox_triage.engine.actions import ItemActions
from inbox_triage.engine.batches import (
    ActionExecutor,
    AssignmentResult,
    BatchAssigner,
    BatchResolver,
    PendingBatch,
    ResolutionResult,
    batch_type_config,
)
from inbox_triage.engine.learning import LearningLoop, LearningResult
from inbox_triage.engine.proposals import Proposal, RuleProposer
from inbox_triage.engine.triage import BatchPassResult, TriageCycleResult, TriageEngine

__all__ = [
    # Batches
    "ActionExecutor",
    "AssignmentResult",
    "BatchAssigner",
    "BatchResolver",
    "PendingBatch",
    "ResolutionResult",
    "batch_type_config",
    # Item actions
    "ItemActions",
    # Learning
    "LearningLoop",
    "LearningResult",
    # Proposals
    "Proposal",
    "RuleProposer",
    # Triage
    "BatchPassResult",
    "TriageCycleResult",
    "TriageEngine",
]
