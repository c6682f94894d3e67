from mtnorm.normalization.mtnormalise import (
    DegenerateMaskError,
    InputShapeError,
    MTNormalise,
    MTNormaliseError,
    NonPositiveBalanceFactorError,
    NormalisationConfig,
    NormalisationResult,
)

__all__ = [
    "DegenerateMaskError",
    "InputShapeError",
    "MTNormalise",
    "MTNormaliseError",
    "NonPositiveBalanceFactorError",
    "NormalisationConfig",
    "NormalisationResult",
]
