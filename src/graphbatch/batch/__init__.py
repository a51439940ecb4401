"""
Batch orchestration: build pair operations, execute them in groups,
classify outcomes, retry selectively and verify the final state.
"""

from .builder import BatchBuilder, GroupPolicy, PayloadWeight, assess_payload
from .executor import BatchExecutor, ExecutionResult, GroupOutcome
from .operations import Operation, PairSpec, parent_tag, result_ref
from .orchestrator import BatchOrchestrator, FailureDetail, RunReport
from .outcomes import PairResult, PairStatus, ParsedResult, ResultState, classify_pairs, parse_result
from .retry import RetryStats, SelectiveRetry
from .verifier import SmartVerifier, VerificationReport

__all__ = [
    'BatchBuilder', 'GroupPolicy', 'PayloadWeight', 'assess_payload',
    'BatchExecutor', 'ExecutionResult', 'GroupOutcome',
    'Operation', 'PairSpec', 'parent_tag', 'result_ref',
    'BatchOrchestrator', 'FailureDetail', 'RunReport',
    'PairResult', 'PairStatus', 'ParsedResult', 'ResultState', 'classify_pairs', 'parse_result',
    'RetryStats', 'SelectiveRetry',
    'SmartVerifier', 'VerificationReport',
]
