"""
Localization Module: Measurement building, lateration, robust estimation.

Key classes:
- LaterationSolver: Linear and Levenberg-Marquardt lateration
- SampleConsensusEngine: RANSAC / LMedS / MSAC / PROSAC / PROMedS
- RobustPositionEstimator: Locked state machine around the engine
- FingerprintNearestFinder: k-nearest located fingerprints by RSSI
- FingerprintPositionEstimator: Linear RSSI positioning from fingerprints
- WeightedKNearestNeighboursSolver: Weighted average of nearest fingerprints
"""

from .errors import (
    PositioningError,
    LockedError,
    NotReadyError,
    NumericalError,
    RobustEstimatorError,
    FingerprintEstimationError,
)
from .measurement_builder import (
    build_measurements,
    rssi_to_distance,
    distance_to_rssi,
    rssi_distance_variance,
    position_std_from_covariance,
    FALLBACK_DISTANCE_STD,
)
from .fingerprint_finder import (
    FingerprintNearestFinder,
    find_nearest,
    signal_distance,
)
from .lateration_solver import (
    LaterationSolver,
    LaterationSolverConfig,
    LaterationResult,
    solve_lateration,
)
from .consensus_policies import (
    RobustMethod,
    SamplingPolicy,
    UniformSampling,
    ProgressiveSampling,
    ScoringPolicy,
    InlierCountScoring,
    MedianScoring,
    TruncatedScoring,
    policies_for,
    required_iterations,
)
from .consensus_engine import (
    SampleConsensusEngine,
    RobustEstimatorConfig,
)
from .robust_position_estimator import (
    EstimatorState,
    PositionEstimatorListener,
    RobustPositionEstimator,
    create_estimator,
)
from .fingerprint_position_estimator import (
    FingerprintEstimatorConfig,
    FingerprintPositionEstimator,
)
from .weighted_knn_solver import WeightedKNearestNeighboursSolver

__all__ = [
    # Errors
    'PositioningError',
    'LockedError',
    'NotReadyError',
    'NumericalError',
    'RobustEstimatorError',
    'FingerprintEstimationError',
    # Measurements
    'build_measurements',
    'rssi_to_distance',
    'distance_to_rssi',
    'rssi_distance_variance',
    'position_std_from_covariance',
    'FALLBACK_DISTANCE_STD',
    # Fingerprints
    'FingerprintNearestFinder',
    'find_nearest',
    'signal_distance',
    'FingerprintEstimatorConfig',
    'FingerprintPositionEstimator',
    'WeightedKNearestNeighboursSolver',
    # Lateration
    'LaterationSolver',
    'LaterationSolverConfig',
    'LaterationResult',
    'solve_lateration',
    # Sample consensus
    'RobustMethod',
    'SamplingPolicy',
    'UniformSampling',
    'ProgressiveSampling',
    'ScoringPolicy',
    'InlierCountScoring',
    'MedianScoring',
    'TruncatedScoring',
    'policies_for',
    'required_iterations',
    'SampleConsensusEngine',
    'RobustEstimatorConfig',
    'EstimatorState',
    'PositionEstimatorListener',
    'RobustPositionEstimator',
    'create_estimator',
]
