"""Configuration management for the RNA-seq dashboard."""

from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml


class AnalysisDefaults(BaseModel):
    """Default analysis parameters."""

    design_factor: str = "condition"
    fit_type: Literal["parametric", "local", "mean"] = "mean"
    pvalue_cutoff: float = Field(default=0.05, gt=0.0, le=1.0)
    log2fc_cutoff: float = Field(default=1.0, ge=0.0)
    heatmap_top_n: int = Field(default=50, ge=1)
    pca_top_n: int = Field(default=500, ge=2)
    table_page_size: int = Field(default=10, ge=1)


class PathConfig(BaseModel):
    """Path configurations."""

    user_home: Path = Field(default_factory=lambda: Path.home() / ".rnaseq_dashboard")
    upload_dir: Optional[Path] = None  # None means the system temp directory

    def create_directories(self):
        """Create all necessary directories."""
        for path in [self.user_home, self.upload_dir]:
            if path is not None:
                path.mkdir(parents=True, exist_ok=True)


class Config(BaseSettings):
    """Main configuration class."""

    model_config = SettingsConfigDict(env_prefix="RNASEQ_", env_nested_delimiter="__")

    defaults: AnalysisDefaults = Field(default_factory=AnalysisDefaults)
    paths: PathConfig = Field(default_factory=PathConfig)

    # App settings
    app_title: str = "RNA-seq Analysis Dashboard"
    debug: bool = False
    host: str = "127.0.0.1"
    port: int = 8050
    log_level: str = "INFO"
    max_upload_bytes: int = Field(default=1024 * 1024 * 1024, ge=1)  # 1 GiB
    session_ttl_minutes: int = Field(default=240, ge=1)
    progress_interval_ms: int = Field(default=500, ge=100)

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """Load configuration from YAML file."""
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    def to_yaml(self, path: Path):
        """Save configuration to YAML file."""
        data = self.model_dump(mode="json")

        with open(path, 'w') as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def initialize(self):
        """Create directories and write a default config file if none exists."""
        self.paths.create_directories()

        config_file = self.paths.user_home / "config.yaml"
        if not config_file.exists():
            self.to_yaml(config_file)


# Global configuration instance
_config: Optional[Config] = None


def default_config_path() -> Path:
    return Path.home() / ".rnaseq_dashboard" / "config.yaml"


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        path = default_config_path()
        if path.exists():
            _config = Config.from_yaml(path)
        else:
            _config = Config()
    return _config


def set_config(config: Optional[Config]):
    """Set (or with ``None``, reset) the global configuration instance."""
    global _config
    _config = config


# Example config.yaml template
CONFIG_TEMPLATE = """
# RNA-seq Dashboard Configuration

defaults:
  design_factor: condition   # Metadata column used as the design factor
  fit_type: mean             # DESeq2 dispersion fit type
  pvalue_cutoff: 0.05        # Volcano plot p-value cutoff
  log2fc_cutoff: 1.0         # Volcano plot |log2 fold change| cutoff
  heatmap_top_n: 50          # Genes shown in the expression heatmap
  pca_top_n: 500             # Most variable genes used for PCA
  table_page_size: 10        # Rows per page in the results table

paths:
  user_home: ~/.rnaseq_dashboard
  # upload_dir: /tmp/rnaseq_uploads   # defaults to the system temp directory

# Application settings
app_title: RNA-seq Analysis Dashboard
debug: false
host: 127.0.0.1
port: 8050
log_level: INFO
max_upload_bytes: 1073741824   # 1 GiB
session_ttl_minutes: 240
progress_interval_ms: 500
"""
