from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Mapping, TypeVar

import yaml
from pydantic import BaseModel, ConfigDict, Field, PositiveInt, ValidationError, model_validator

from panderep.exceptions import ConfigurationError

TieBreak = Literal["id", "input"]
Priority = Literal["size", "alphabetical", "input"]
NoveltyMode = Literal["absolute", "fraction"]
UnitigType = Literal["greedymatchtigs", "eulertigs", "pathtigs", "unitiglinks"]
BatchStrategy = Literal["linear", "double"]


class CommonConfig(BaseModel):
    """Shared command options across panderep subcommands."""

    model_config = ConfigDict(extra="forbid")

    outdir: Path = Field(default_factory=Path.cwd)
    threads: PositiveInt = 1
    dry_run: bool = False
    force: bool = False
    log_file: Path | None = None
    verbose: bool = False
    quiet: bool = False

    @model_validator(mode="after")
    def _validate_verbosity(self) -> "CommonConfig":
        if self.verbose and self.quiet:
            raise ValueError("`verbose` and `quiet` cannot both be true.")
        return self


class GenomeInputConfig(CommonConfig):
    seq_files: list[Path] = Field(default_factory=list)
    input_list: Path | None = None
    genomes_tsv: Path | None = None


class DistConfig(GenomeInputConfig):
    mock: bool = False
    min_ani: float = Field(default=0.0, ge=0.0, le=1.0)

    # skani
    min_aligned_frac: float = Field(default=0.15, ge=0.0, le=1.0)
    marker_compression_factor: PositiveInt = 1000
    kmer_subsampling_rate: PositiveInt = 30
    rescue_small: bool = False
    clip_tails: bool = False
    median: bool = False
    adjust_ani: bool = False
    bootstrap_ci: bool = False

    # Mash pre-screen; also drives the in-process sketch estimator in mock mode.
    mash_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    mash_k: PositiveInt = 21
    mash_sketch_size: PositiveInt = 10000


class ClusterConfig(CommonConfig):
    dist_file: Path | None = None
    ani_threshold: float = Field(default=0.97, ge=0.0, le=1.0)
    tie_break: TieBreak = "id"
    write_dendrogram: bool = False


class GraphConfig(GenomeInputConfig):
    mock: bool = False

    # ggcat
    graph_kmer_size: PositiveInt = 51
    kmer_min_multiplicity: PositiveInt = 1
    minimizer_length: PositiveInt | None = None
    no_reverse_complement: bool = False
    unitig_type: UnitigType = "greedymatchtigs"
    memory: PositiveInt = 4
    intermediate_compression_level: int | None = Field(default=None, ge=0)
    tmp_dir: Path | None = None


class BuildConfig(GraphConfig):
    clusters: Path | None = None
    target_cluster: str | None = None
    priority: Priority = "input"


class DereplicateConfig(DistConfig, GraphConfig):
    min_ani: float = Field(default=0.95, ge=0.0, le=1.0)
    ani_threshold: float = Field(default=0.97, ge=0.0, le=1.0)
    tie_break: TieBreak = "id"

    priority: Priority = "size"
    novelty_mode: NoveltyMode = "fraction"
    novelty_threshold: float = Field(default=0.01, ge=0.0)

    # Iterative batching; off unless batch_step is set.
    batch_step: PositiveInt | None = None
    batch_step_strategy: BatchStrategy = "double"
    max_iters: int = Field(default=10, ge=0)
    guided: bool = False
    initial_batches: Path | None = None
    external_clustering: Path | None = None

    write_dendrogram: bool = False

    @model_validator(mode="after")
    def _validate_novelty(self) -> "DereplicateConfig":
        if self.novelty_mode == "fraction" and self.novelty_threshold > 1.0:
            raise ValueError("`novelty_threshold` must be within [0, 1] when `novelty_mode` is `fraction`.")
        return self

    @model_validator(mode="after")
    def _validate_batching(self) -> "DereplicateConfig":
        if self.batch_step is None and (self.guided or self.initial_batches is not None):
            raise ValueError("`guided` and `initial_batches` require `batch_step`.")
        if self.mash_threshold is not None and (self.batch_step is not None or self.external_clustering is not None):
            raise ValueError("`mash_threshold` cannot be combined with batching or `external_clustering`.")
        return self


class PanDerepConfig(BaseModel):
    """Top-level YAML config model."""

    model_config = ConfigDict(extra="forbid")

    dist: DistConfig | None = None
    cluster: ClusterConfig | None = None
    dereplicate: DereplicateConfig | None = None
    build: BuildConfig | None = None


def load_config(config_path: Path | None) -> PanDerepConfig:
    """Load and validate a YAML config file."""

    if config_path is None:
        return PanDerepConfig()

    if not config_path.exists():
        raise ConfigurationError(f"Config file does not exist: {config_path}")

    if not config_path.is_file():
        raise ConfigurationError(f"Config path is not a file: {config_path}")

    payload_raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if payload_raw is None:
        payload_raw = {}

    if not isinstance(payload_raw, dict):
        raise ConfigurationError("Config YAML must be a key/value mapping at the top level.")

    try:
        return PanDerepConfig.model_validate(payload_raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid config file: {config_path}\n{exc}") from exc


T = TypeVar("T", bound=CommonConfig)


def merge_command_config(
    *,
    config_path: Path | None,
    section: str,
    model_cls: type[T],
    cli_overrides: Mapping[str, Any],
) -> T:
    """Merge YAML config values with explicit CLI overrides and validate."""

    root = load_config(config_path)
    section_model = getattr(root, section)

    merged: dict[str, Any] = {}
    if section_model is not None:
        merged.update(section_model.model_dump(exclude_unset=True))

    for key, value in cli_overrides.items():
        if value is None:
            continue
        # Empty repeatable options mean "not given" on the command line.
        if isinstance(value, (list, tuple)) and not value:
            continue
        merged[key] = value

    try:
        return model_cls.model_validate(merged)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid merged config for `{section}`:\n{exc}") from exc
