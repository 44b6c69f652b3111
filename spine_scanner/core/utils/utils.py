from omegaconf import DictConfig, OmegaConf
from pathlib   import Path
from typing    import Any, Optional, Union

class Utils:
    """
    Core utilities used across the project.
    """

    PACKAGE_ROOT   = Path(__file__).resolve().parents[2]
    DEFAULT_CONFIG = PACKAGE_ROOT / 'config' / 'scanner.yml'

    @classmethod
    def load_config(
        cls,
        config_file : Optional[Path]           = None,
        overrides   : Optional[dict[str, Any]] = None
    ) -> DictConfig:
        """
        Loads the scanner configuration, merging any overrides on top.

        Args:
            config_file : Path to a YAML config (defaults to the packaged scanner.yml)
            overrides   : Nested dictionary of values replacing those in the file

        Returns:
            DictConfig: The merged configuration.

        Raises:
            FileNotFoundError: If the config file does not exist
        """
        config_path = Path(config_file or cls.DEFAULT_CONFIG)
        if not config_path.is_file():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        config = OmegaConf.load(config_path)
        if overrides:
            config = OmegaConf.merge(config, OmegaConf.create(overrides))
        return config

    @classmethod
    def resolve_path(cls, path: Union[str, Path]) -> Path:
        """
        Resolves a config path; relative paths are taken from the package root.
        """
        path = Path(path).expanduser()
        return path if path.is_absolute() else cls.PACKAGE_ROOT / path
