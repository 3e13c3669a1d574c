"""Pipeline stage implementations."""

from session_classifier.pipeline.classification import (
    BatchAnalysisError,
    SessionAnalyzer,
    SessionBatchAnalyzer,
)
from session_classifier.pipeline.conflict_resolution import (
    ConflictResolutionError,
    ConflictResolutionResult,
    ConflictResolver,
    apply_resolutions,
)
from session_classifier.pipeline.discovery import (
    DiscoveryConfig,
    DiscoveryResult,
    StrategicDiscovery,
    get_adaptive_discovery_config,
    select_diverse_sessions,
)
from session_classifier.pipeline.orchestrator import (
    ParallelOrchestrator,
    distribute_sessions_across_streams,
    get_optimal_configuration,
    synchronize_classifications,
)
from session_classifier.pipeline.run_pipeline import (
    AnalysisRunConfig,
    AnalysisRunResult,
    ClassificationStats,
    ServiceRegistry,
    SessionClassificationService,
    generate_run_id,
    save_run_artifacts,
    summarize_results,
)
from session_classifier.pipeline.sampling import (
    InsufficientSessionsError,
    SamplingConfig,
    SamplingResult,
    SessionSampler,
    generate_time_windows,
    random_sample,
)
from session_classifier.pipeline.stream_processing import StreamProcessor
from session_classifier.pipeline.token_budget import (
    BatchConfig,
    TokenBudgetEstimator,
    split_sessions_into_batches,
)
from session_classifier.pipeline.validation import (
    create_fallback_results,
    merge_retry_results,
    should_retry,
    validate_batch_response,
)

__all__ = [
    "AnalysisRunConfig",
    "AnalysisRunResult",
    "BatchAnalysisError",
    "BatchConfig",
    "ClassificationStats",
    "ConflictResolutionError",
    "ConflictResolutionResult",
    "ConflictResolver",
    "DiscoveryConfig",
    "DiscoveryResult",
    "InsufficientSessionsError",
    "ParallelOrchestrator",
    "SamplingConfig",
    "SamplingResult",
    "ServiceRegistry",
    "SessionAnalyzer",
    "SessionBatchAnalyzer",
    "SessionClassificationService",
    "SessionSampler",
    "StrategicDiscovery",
    "StreamProcessor",
    "TokenBudgetEstimator",
    "apply_resolutions",
    "create_fallback_results",
    "distribute_sessions_across_streams",
    "generate_run_id",
    "generate_time_windows",
    "get_adaptive_discovery_config",
    "get_optimal_configuration",
    "merge_retry_results",
    "random_sample",
    "save_run_artifacts",
    "select_diverse_sessions",
    "should_retry",
    "split_sessions_into_batches",
    "summarize_results",
    "synchronize_classifications",
    "validate_batch_response",
]
