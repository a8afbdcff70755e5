import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from draftforge.constants import DEFAULT_COVERAGE_FLOOR, DEFAULT_COVERAGE_FRACTION
from draftforge.schemas import ModelConfig, SectionSpec, StructuralProfile

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::-(.*?))?\}")


def _substitute_env_vars(value: str) -> str:
    def _replace(match: re.Match[str]) -> str:
        env_val = os.environ.get(match.group(1))
        if env_val is not None:
            return env_val
        default = match.group(2)
        return default if default is not None else ""

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _substitute_recursive(obj: Any) -> Any:
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _substitute_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_recursive(item) for item in obj]
    return obj


def _read_yaml(config_path: str | None, kind: str) -> Any | None:
    if not config_path:
        return None

    path = Path(config_path)
    if not path.is_file():
        logger.warning("%s config file not found: %s", kind, config_path)
        return None

    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to load %s config from %s: %s", kind, config_path, e)
        return None


def load_model_config(config_path: str | None = None) -> dict[str, ModelConfig] | None:
    data = _read_yaml(config_path, "Model")
    if data is None:
        return None

    if not isinstance(data, dict) or "models" not in data:
        logger.warning("Model config missing 'models' key: %s", config_path)
        return None

    raw_models = data["models"]
    if not isinstance(raw_models, list) or not raw_models:
        logger.warning("Model config 'models' is empty or not a list: %s", config_path)
        return None

    registry: dict[str, ModelConfig] = {}
    for i, entry in enumerate(raw_models):
        try:
            cfg = ModelConfig.model_validate(_substitute_recursive(entry))
        except ValidationError as e:
            logger.warning("Skipping invalid model entry %d in %s: %s", i, config_path, e)
            continue
        registry[cfg.id] = cfg

    if not registry:
        logger.warning("No valid models loaded from %s", config_path)
        return None

    logger.info("Loaded %d model(s) from YAML config: %s", len(registry), config_path)
    return registry


# =============================================================================
# Structural profiles
# =============================================================================


def _spec(key: str, title: str, words: int) -> SectionSpec:
    return SectionSpec(key=key, title=title, expected_words=words)


DEFAULT_PROFILES: dict[str, StructuralProfile] = {
    "literatureReview": StructuralProfile(
        document_type="literatureReview",
        section_specs=[
            _spec("introduction", "Introduction", 500),
            _spec("literatureReview", "Literature Review", 1200),
            _spec("discussion", "Discussion", 900),
            _spec("conclusion", "Conclusion", 350),
        ],
        coverage_floor=12,
        coverage_fraction=0.6,
        forbidden_sections=["methodology", "results"],
    ),
    "researchArticle": StructuralProfile(
        document_type="researchArticle",
        section_specs=[
            _spec("introduction", "Introduction", 500),
            _spec("methodology", "Methodology", 700),
            _spec("results", "Results", 800),
            _spec("discussion", "Discussion", 800),
            _spec("conclusion", "Conclusion", 300),
        ],
        coverage_floor=DEFAULT_COVERAGE_FLOOR,
        coverage_fraction=DEFAULT_COVERAGE_FRACTION,
    ),
}


def load_structural_profiles(config_path: str | None = None) -> dict[str, StructuralProfile] | None:
    data = _read_yaml(config_path, "Profile")
    if data is None:
        return None

    if not isinstance(data, dict) or not isinstance(data.get("profiles"), dict):
        logger.warning("Profile config missing 'profiles' mapping: %s", config_path)
        return None

    profiles: dict[str, StructuralProfile] = {}
    for document_type, entry in data["profiles"].items():
        entry = _substitute_recursive(entry or {})
        entry.setdefault("document_type", document_type)
        try:
            profiles[document_type] = StructuralProfile.model_validate(entry)
        except ValidationError as e:
            logger.warning("Skipping invalid profile %s in %s: %s", document_type, config_path, e)

    if not profiles:
        logger.warning("No valid profiles loaded from %s", config_path)
        return None

    logger.info("Loaded %d structural profile(s) from %s", len(profiles), config_path)
    return profiles


class YamlStructuralProfileService:
    """Structural-profile collaborator backed by YAML with built-in defaults."""

    def __init__(self, config_path: str | None = None) -> None:
        self.profiles = dict(DEFAULT_PROFILES)
        loaded = load_structural_profiles(config_path)
        if loaded:
            self.profiles.update(loaded)

    async def get_profile(self, document_type: str) -> StructuralProfile:
        profile = self.profiles.get(document_type)
        if profile is None:
            logger.warning(
                "Unknown document type %s, using literatureReview profile", document_type
            )
            profile = self.profiles["literatureReview"]
        return profile
