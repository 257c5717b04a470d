"""
Configuration for the pattern store and its EWC++ consolidation.

Plain dataclasses with defaults in the fields. Call validate() to get a
list of problems (empty = valid); PatternStore refuses invalid configs.
"""

import os
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional


CONSOLIDATION_MODES = ("sync", "deferred")


@dataclass
class EWCConfig:
    """
    EWC++ (Elastic Weight Consolidation++) parameters.

    See Progress & Compress, https://arxiv.org/abs/1801.10112
    """

    # Regularization strength. Higher = stronger preservation of old patterns.
    #   0.1-1.0 plastic, 1.0-10.0 balanced, 10.0-100.0 minimal forgetting
    lambda_: float = 5.0

    # Applied to the Fisher running sum at each consolidation.
    # 0.9 = recent patterns dominate, 1.0 = no decay (plain EWC)
    fisher_decay: float = 0.95

    # Patterns below this are eligible for pruning when over capacity.
    importance_threshold: float = 0.01

    # Patterns resampled per consolidation to refresh the Fisher estimate.
    fisher_sample_size: int = 100

    # Consolidate once (new_patterns / total_patterns) reaches this.
    consolidation_threshold: float = 0.1

    # Soft cap on stored patterns.
    max_patterns: int = 10000

    # Seconds between consolidations (prevents thrashing).
    min_consolidation_interval: float = 3600.0

    # Fresh patterns start at reward weight times this, below the
    # protected region until a consolidation scores them.
    initial_importance_scale: float = 0.005

    # Multiplicative importance boost per read match.
    access_importance_boost: float = 0.01

    # Cosine similarity above which a new observation merges into an
    # existing pattern of the same skill.
    merge_similarity: float = 0.95

    def validate(self) -> List[str]:
        """Validate parameters. Returns list of errors (empty = valid)."""
        errors = []

        if self.lambda_ < 0:
            errors.append("lambda_ must be >= 0")
        if not 0.0 < self.fisher_decay <= 1.0:
            errors.append("fisher_decay must be in (0, 1]")
        if self.importance_threshold < 0:
            errors.append("importance_threshold must be >= 0")
        if self.fisher_sample_size < 0:
            errors.append("fisher_sample_size must be >= 0")
        if not 0.0 < self.consolidation_threshold <= 1.0:
            errors.append("consolidation_threshold must be in (0, 1]")
        if self.max_patterns < 1:
            errors.append("max_patterns must be >= 1")
        if self.min_consolidation_interval < 0:
            errors.append("min_consolidation_interval must be >= 0")
        if self.initial_importance_scale <= 0:
            errors.append("initial_importance_scale must be > 0")
        if self.access_importance_boost < 0:
            errors.append("access_importance_boost must be >= 0")
        if not -1.0 <= self.merge_similarity <= 1.0:
            errors.append("merge_similarity must be in [-1, 1]")

        return errors

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EWCConfig":
        """Create from dictionary, accepting "lambda" for lambda_."""
        data = data.copy()
        if "lambda" in data:
            data["lambda_"] = data.pop("lambda")
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class PatternStoreConfig:
    """PatternStore configuration."""

    # SQLite database path. None = in-memory database.
    db_path: Optional[str] = None

    ewc: EWCConfig = field(default_factory=EWCConfig)

    # Embedding dimensions (must match the embedding model).
    dimensions: int = 384

    # Embedding provider: "simple" (hash based, numpy only) or "local"
    # (sentence-transformers).
    embedding_provider: str = "simple"
    embedding_model: str = "all-MiniLM-L6-v2"

    # Consolidate automatically from store_pattern.
    auto_consolidate: bool = True

    # "sync" blocks store_pattern while consolidating,
    # "deferred" hands it to a background thread.
    consolidation_mode: str = "sync"

    # Update access stats and boost importance on read matches.
    track_access: bool = True

    # Seed for Fisher resampling (None = nondeterministic).
    random_seed: Optional[int] = None

    def validate(self) -> List[str]:
        """Validate configuration. Returns list of errors (empty = valid)."""
        errors = [f"ewc.{e}" for e in self.ewc.validate()]

        if self.dimensions < 1:
            errors.append("dimensions must be >= 1")
        if self.consolidation_mode not in CONSOLIDATION_MODES:
            errors.append(
                f"consolidation_mode must be one of {', '.join(CONSOLIDATION_MODES)}"
            )
        if not self.embedding_provider:
            errors.append("embedding_provider is required")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatternStoreConfig":
        """Create from dictionary."""
        data = data.copy()
        if isinstance(data.get("ewc"), dict):
            data["ewc"] = EWCConfig.from_dict(data["ewc"])
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_env(cls, **overrides: Any) -> "PatternStoreConfig":
        """
        Build a config from PATTERN_NEXUS_* environment variables.

        Keyword overrides win over the environment.
        """
        config = cls(
            db_path=os.environ.get("PATTERN_NEXUS_DB_PATH") or None,
            embedding_provider=os.environ.get("PATTERN_NEXUS_EMBEDDINGS", "simple"),
            embedding_model=os.environ.get(
                "PATTERN_NEXUS_EMBEDDING_MODEL", "all-MiniLM-L6-v2"
            ),
            dimensions=int(os.environ.get("PATTERN_NEXUS_DIMENSIONS", "384")),
            consolidation_mode=os.environ.get("PATTERN_NEXUS_CONSOLIDATION_MODE", "sync"),
        )
        max_patterns = os.environ.get("PATTERN_NEXUS_MAX_PATTERNS")
        if max_patterns:
            config.ewc.max_patterns = int(max_patterns)

        if overrides:
            config = config.with_overrides(**overrides)
        return config

    def with_overrides(self, **overrides: Any) -> "PatternStoreConfig":
        """
        Copy with fields replaced.

        "ewc" may be a dict of EWC parameters merged over the current ones.
        Unknown field names raise ValueError.
        """
        unknown = set(overrides) - set(self.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown config fields: {', '.join(sorted(unknown))}")

        data = self.to_dict()
        ewc = overrides.pop("ewc", None)
        if isinstance(ewc, EWCConfig):
            data["ewc"] = asdict(ewc)
        elif ewc:
            data["ewc"] = EWCConfig.from_dict({**data["ewc"], **ewc})
        data.update(overrides)
        return PatternStoreConfig.from_dict(data)
