import yaml
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .models import PipelineConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")


def get_config_value(config: Union[PipelineConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: PipelineConfig model or dict
        path: Dot-separated path like "queue.backoff_base_s"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, PipelineConfig):
        config = config.model_dump()

    keys = path.split(".")
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    config_path: Optional[Path] = None,
) -> PipelineConfig:
    """
    Resolve config: Default < Local < CLI
    Returns validated Pydantic PipelineConfig model.

    ``config_path`` replaces the local overrides file when given (``--config``).
    Raises pydantic.ValidationError if the merged config is invalid.
    """
    cli_args = cli_args or {}

    # 1. Load default YAML
    config_data = load_yaml(DEFAULT_CONFIG_PATH)

    # 2. Merge local overrides
    local_data = load_yaml(Path(config_path) if config_path else LOCAL_CONFIG_PATH)
    config_data = merge_dicts(config_data, local_data)

    # 3. Validate, then apply CLI overrides
    config = PipelineConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
