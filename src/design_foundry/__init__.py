"""Design Foundry: memoized diagnosis of research designs across parameter spaces.

User-entered parameter text is parsed into value sequences, expanded into
design points, fingerprinted together with the designer's logic and the
simulation configuration, and either served from a content-addressed cache
or evaluated in parallel and stored.

Public API
----------
- :func:`run_diagnoses` - Parse, expand, look up or compute, and store
- :class:`DiagnosisService` - Long-lived owner of a store and executor
- :func:`parse_sequence` - Parse one parameter's text
- :func:`expand_design_space` - Expand parsed parameters into design points
- :func:`fingerprint` - Cache key of a diagnosis run

Example
-------
>>> from design_foundry import DiagnosisService, SimulationConfig, load_settings
>>> from design_foundry.designers import TwoArmTrialDesigner
>>> service = DiagnosisService.from_settings(load_settings())
>>> result = service.run(TwoArmTrialDesigner(), {"N": "20, 40, ..., 100"}, SimulationConfig(n_simulations=200))
>>> result.diagnosands_table()
"""

from __future__ import annotations

from design_foundry.api import DiagnosisService, prepare_design_space, run_diagnoses
from design_foundry.diagnosis import (
    CacheEntry,
    CancellationToken,
    DesignerEvaluator,
    DiagnosisCacheKey,
    DiagnosisExecutor,
    DiagnosisResult,
    FilesystemDiagnosisCache,
    InMemoryDiagnosisCache,
    PointResult,
    PointStatus,
    SimulationConfig,
    designer_source_bytes,
    fingerprint,
    make_pool,
)
from design_foundry.errors import (
    CacheIntegrityError,
    CacheStoreError,
    DesignFoundryError,
    EvaluationCancelled,
    ExpansionError,
    InstantiationError,
    ParseError,
    SettingsError,
)
from design_foundry.params import (
    DesignSpacePoint,
    KindHint,
    ParameterDefinition,
    ParsedValue,
    expand_design_space,
    parse_sequence,
)
from design_foundry.settings import ExplorerSettings, load_settings

__version__ = "0.1.0"

__all__ = [
    # Core API
    "run_diagnoses",
    "prepare_design_space",
    "DiagnosisService",
    "parse_sequence",
    "expand_design_space",
    "fingerprint",
    "designer_source_bytes",
    "make_pool",
    "load_settings",
    # Core types
    "CacheEntry",
    "CancellationToken",
    "DesignerEvaluator",
    "DesignSpacePoint",
    "DiagnosisCacheKey",
    "DiagnosisExecutor",
    "DiagnosisResult",
    "ExplorerSettings",
    "FilesystemDiagnosisCache",
    "InMemoryDiagnosisCache",
    "KindHint",
    "ParameterDefinition",
    "ParsedValue",
    "PointResult",
    "PointStatus",
    "SimulationConfig",
    # Errors
    "DesignFoundryError",
    "ParseError",
    "ExpansionError",
    "InstantiationError",
    "EvaluationCancelled",
    "CacheStoreError",
    "CacheIntegrityError",
    "SettingsError",
]
