"""Configuration handling for the gene set enrichment pipeline."""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import tomli
import tomli_w

from bulkgsea.data import SizeBounds
from bulkgsea.permutation import TrialSchedule

DEFAULT_TRIAL_SCHEDULE = [100, 1000, 10000]


class PipelineConfig:
    """Configuration class for the gene set enrichment pipeline."""

    def __init__(self, config_path: Union[str, Path]):
        """Initialise the configuration from a TOML file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config_path = config_path

        try:
            with open(config_path, "rb") as f:
                self.config = tomli.load(f)
        except FileNotFoundError:
            raise ValueError(f"Error loading configuration file: {config_path} does not exist")
        except Exception as e:
            raise ValueError(f"Error loading configuration file: {str(e)}")

        required_sections = ['input', 'output', 'analysis']
        missing_sections = [section for section in required_sections if section not in self.config]
        if missing_sections:
            raise ValueError(f"Missing required sections in configuration: {', '.join(missing_sections)}")

        self.input_files = self.config.get("input", {})

        required_input_files = ['ranked_list_file', 'gene_sets_file']
        missing_files = [file for file in required_input_files if file not in self.input_files]
        if missing_files:
            raise ValueError(f"Missing required input files in configuration: {', '.join(missing_files)}")

        self.output_config = self.config.get("output", {})
        self.analysis_params = self.config.get("analysis", {})

        self.score_column = self.input_files.get("score_column", "score")
        self.gene_column = self.input_files.get("gene_column", "gene_id")

        self.num_threads = self.analysis_params.get("num_threads", 1)
        self.random_seed: Optional[int] = self.analysis_params.get("random_seed", None)
        self.power = float(self.analysis_params.get("power", 1.0))
        self.use_ranks = bool(self.analysis_params.get("use_ranks", False))
        self.min_exceedances = int(self.analysis_params.get("min_exceedances", 10))
        self.fdr_alpha = float(self.analysis_params.get("fdr_alpha", 0.05))

    def get_size_bounds(self) -> SizeBounds:
        """Get the gene set size filter.

        Returns:
            SizeBounds built from analysis.min_size and analysis.max_size
        """
        return SizeBounds(
            min_size=int(self.analysis_params.get("min_size", 15)),
            max_size=int(self.analysis_params.get("max_size", 500))
        )

    def get_trial_schedule(self) -> TrialSchedule:
        """Get the permutation trial schedule.

        Returns:
            TrialSchedule; raises InvalidScheduleError if malformed
        """
        stages: List[Any] = self.analysis_params.get("trial_schedule", DEFAULT_TRIAL_SCHEDULE)
        return TrialSchedule.coerce(stages)

    def get_output_path(self, subdir: Optional[str] = None) -> Path:
        """Get the path to the output directory or a subdirectory within it.

        Args:
            subdir: Optional subdirectory name within the output directory

        Returns:
            Path object for the requested directory
        """
        output_dir = self.output_config.get("output_dir", self.output_config.get("directory", "results"))
        base_path = Path(output_dir)

        if subdir:
            return base_path / subdir

        return base_path

    def to_dict(self) -> Dict[str, Any]:
        """Configuration as a JSON-serialisable dictionary."""
        return {
            'input_files': {k: str(v) for k, v in self.input_files.items()},
            'output': dict(self.output_config),
            'analysis': dict(self.analysis_params),
        }

    def save_config(self, output_path: Union[str, Path]) -> None:
        """Save the configuration to a TOML file.

        Args:
            output_path: Path to save the configuration file
        """
        with open(output_path, "wb") as f:
            tomli_w.dump(self.config, f)
