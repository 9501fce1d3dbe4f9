"""Questionnaire loader service with caching and validation.

This module loads questionnaire definitions from YAML files, validates them
against Pydantic schemas and the dependency validator, and caches the
results for performance.
"""

from pathlib import Path
from functools import lru_cache
from typing import Optional
import yaml
from pydantic import ValidationError

from canvass.config import get_settings
from canvass.schemas.questionnaire import Questionnaire
from canvass.services.questionnaire_validator import (
    QuestionnaireValidator,
    QuestionnaireStructureError,
)
from canvass.logging_config import get_logger

logger = get_logger(__name__)


class QuestionnaireNotFoundError(Exception):
    """Raised when a questionnaire is missing or not available to a tenant."""
    pass


class QuestionnaireValidationError(Exception):
    """Raised when a questionnaire file fails validation."""
    pass


class QuestionnaireLoader:
    """Service for loading and caching questionnaire definitions.

    Questionnaires are loaded from YAML files in the questionnaires directory
    and validated against Pydantic schemas. Results are cached per id.
    """

    def __init__(self, questionnaires_dir: Optional[str] = None):
        """Initialize questionnaire loader.

        Args:
            questionnaires_dir: Path to questionnaires directory
                (defaults to QUESTIONNAIRES_DIR)
        """
        if questionnaires_dir is None:
            questionnaires_dir = get_settings().questionnaires_dir

        self.questionnaires_dir = Path(questionnaires_dir)

        if not self.questionnaires_dir.exists():
            logger.warning(f"Questionnaires directory not found: {self.questionnaires_dir}")

    @lru_cache(maxsize=128)
    def load(self, questionnaire_id: str) -> Questionnaire:
        """Load and validate a questionnaire from YAML file.

        Results are cached for performance. Clear cache with
        clear_cache() if needed.

        Args:
            questionnaire_id: Identifier (matches YAML filename without .yaml)

        Returns:
            Validated Questionnaire object

        Raises:
            QuestionnaireNotFoundError: If questionnaire file doesn't exist
            QuestionnaireValidationError: If questionnaire fails validation

        Example:
            >>> loader = QuestionnaireLoader()
            >>> questionnaire = loader.load("candidate_poll")
            >>> print(questionnaire.title)
            'Candidate Preference Poll'
        """
        if not questionnaire_id.replace('_', '').replace('-', '').isalnum():
            raise QuestionnaireNotFoundError(f"Questionnaire '{questionnaire_id}' not found")

        yaml_path = self.questionnaires_dir / f"{questionnaire_id}.yaml"

        # Check if file exists
        if not yaml_path.exists():
            logger.error(f"Questionnaire file not found: {yaml_path}")
            raise QuestionnaireNotFoundError(
                f"Questionnaire '{questionnaire_id}' not found at {yaml_path}"
            )

        # Load YAML
        try:
            with open(yaml_path, 'r', encoding='utf-8') as f:
                raw_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"YAML parsing error for {questionnaire_id}: {e}")
            raise QuestionnaireValidationError(
                f"Invalid YAML in questionnaire '{questionnaire_id}': {e}"
            )
        except OSError as e:
            logger.error(f"Error reading questionnaire file {yaml_path}: {e}")
            raise QuestionnaireValidationError(
                f"Error reading questionnaire '{questionnaire_id}': {e}"
            )

        if not isinstance(raw_data, dict):
            raise QuestionnaireValidationError(
                f"Questionnaire '{questionnaire_id}' must be a YAML mapping"
            )

        # Validate with Pydantic, then the dependency graph
        try:
            questionnaire = Questionnaire(**raw_data)
            QuestionnaireValidator.validate(questionnaire)
        except ValidationError as e:
            logger.error(f"Validation error for questionnaire {questionnaire_id}: {e}")
            raise QuestionnaireValidationError(
                f"Validation failed for questionnaire '{questionnaire_id}': {e}"
            )
        except QuestionnaireStructureError as e:
            logger.error(f"Structure error for questionnaire {questionnaire_id}: {e}")
            raise QuestionnaireValidationError(str(e))

        logger.info(
            f"Successfully loaded questionnaire: {questionnaire_id} (version {questionnaire.version})"
        )
        return questionnaire

    def get_for_tenant(self, questionnaire_id: str, tenant_id: str) -> Questionnaire:
        """Load a questionnaire the tenant may submit responses to.

        Args:
            questionnaire_id: Questionnaire identifier
            tenant_id: Caller's tenant

        Returns:
            Validated, active Questionnaire

        Raises:
            QuestionnaireNotFoundError: If missing, inactive or owned by other tenants
            QuestionnaireValidationError: If the file is invalid
        """
        questionnaire = self.load(questionnaire_id)
        if not questionnaire.is_available_to(tenant_id):
            logger.warning(
                f"Questionnaire {questionnaire_id} not available to tenant {tenant_id}"
            )
            raise QuestionnaireNotFoundError(
                f"Questionnaire '{questionnaire_id}' is not available"
            )
        return questionnaire

    def list_questionnaires(self) -> list[str]:
        """List all available questionnaire IDs.

        Returns:
            List of questionnaire IDs (filenames without .yaml extension)
        """
        if not self.questionnaires_dir.exists():
            return []

        questionnaire_ids = [f.stem for f in self.questionnaires_dir.glob("*.yaml")]

        logger.debug(f"Found {len(questionnaire_ids)} questionnaires: {questionnaire_ids}")
        return sorted(questionnaire_ids)

    def clear_cache(self):
        """Clear the questionnaire cache.

        Useful during development or when questionnaires are updated at runtime.
        """
        self.load.cache_clear()
        logger.info("Questionnaire cache cleared")


# Global singleton instance
_loader_instance: Optional[QuestionnaireLoader] = None


def get_questionnaire_loader() -> QuestionnaireLoader:
    """Get global QuestionnaireLoader instance.

    Creates singleton instance on first call.

    Returns:
        Global QuestionnaireLoader instance
    """
    global _loader_instance
    if _loader_instance is None:
        _loader_instance = QuestionnaireLoader()
    return _loader_instance
