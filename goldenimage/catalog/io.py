"""Configuration document loading.

The document may be YAML (.yaml, .yml) or JSON (.json). Parse and schema
failures are reported as goldenimage ValidationError so callers handle a
single error type before any external mutation happens.
"""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as SchemaError

from goldenimage.catalog.schema import ConfigDocument
from goldenimage.errors import ValidationError


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the content is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the content is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_config_data(data: dict[str, Any]) -> ConfigDocument:
    """Validate raw configuration data against the schema.

    Raises:
        ValidationError: If data does not match the schema.
    """
    try:
        return ConfigDocument.model_validate(data)
    except SchemaError as e:
        raise ValidationError(
            f"Invalid configuration document: {e}", code="invalid_config"
        ) from e


def load_config_document(path: Path) -> ConfigDocument:
    """Load and validate the configuration document.

    File format is determined by extension.

    Args:
        path: Path to the configuration document.

    Returns:
        Validated ConfigDocument.

    Raises:
        ValidationError: If the file is missing, unreadable, has an
            unsupported extension, or fails validation.
    """
    if not path.is_file():
        raise ValidationError(
            f"Configuration document not found: {path}", code="config_not_found"
        )

    suffix = path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            data = load_yaml(path)
        elif suffix == ".json":
            data = load_json(path)
        else:
            raise ValidationError(
                f"Unsupported file extension '{suffix}'. Use .yaml, .yml, or .json",
                code="config_format",
            )
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ValidationError(
            f"Failed to read configuration document {path}: {e}",
            code="config_unreadable",
        ) from e

    return parse_config_data(data)


__all__ = [
    "load_config_document",
    "load_json",
    "load_yaml",
    "parse_config_data",
]
