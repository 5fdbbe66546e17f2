# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Execution engine: matching, validation, gating, retries and governance."""

from scriptflow.engine.context import ContextLimits, ExecutionContextManager
from scriptflow.engine.errors import ErrorClassifier, RecoveryPolicy, ScriptError
from scriptflow.engine.executor import ExecutionPhase, ExecutionRequest, ScriptExecutor
from scriptflow.engine.performance import (
    Decision,
    ExecutionMetric,
    PerformanceGovernor,
    PerformanceLimits,
    PerformanceWarning,
)
from scriptflow.engine.url_matcher import MatchResult, PatternValidation, UrlMatcher
from scriptflow.engine.validator import ScriptValidation, ScriptValidator

__all__ = [
    "ContextLimits",
    "ExecutionContextManager",
    "ErrorClassifier",
    "RecoveryPolicy",
    "ScriptError",
    "ExecutionPhase",
    "ExecutionRequest",
    "ScriptExecutor",
    "Decision",
    "ExecutionMetric",
    "PerformanceGovernor",
    "PerformanceLimits",
    "PerformanceWarning",
    "MatchResult",
    "PatternValidation",
    "UrlMatcher",
    "ScriptValidation",
    "ScriptValidator",
]
