"""Migration orchestrator - validates, then executes, and wires the services together."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import requests

from .config import EngineSettings
from .exceptions import ValidationError
from .models.execution import ExecutionContext, ExecutionResult
from .models.validation import ValidationResult
from .services.api_client import PlatformClient
from .services.cloning import CloneResult, CloningService
from .services.credential_store import CredentialStore, InMemoryCredentialStore
from .services.execution_engine import ExecutionEngine
from .services.oauth import OAuthClient
from .services.template_registry import TemplateRegistry
from .services.token_manager import TokenManager
from .services.validator import ValidationEngine
from .templates import register_default_templates

logger = logging.getLogger(__name__)


class MigrationOrchestrator:
    """
    Runs a migration end to end.

    Handles:
    - Pre-flight validation (errors stop the run before anything is written)
    - Template execution
    - Single-record cloning
    - Saving run reports
    """

    def __init__(
        self,
        validator: ValidationEngine,
        engine: ExecutionEngine,
        cloning: Optional[CloningService] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            validator: Validation engine
            engine: Execution engine
            cloning: Cloning service (built from the engine's client when omitted)
        """
        self.validator = validator
        self.engine = engine
        self.cloning = cloning or CloningService(engine.client)

    def validate(self, context: ExecutionContext) -> ValidationResult:
        return self.validator.validate(
            context.template,
            context.source_org_id,
            context.target_org_id,
            context.selected_ids,
        )

    def run(self, context: ExecutionContext, skip_validation: bool = False) -> ExecutionResult:
        """
        Validate and execute a migration.

        Args:
            context: Orgs, template, selection and run configuration
            skip_validation: Go straight to execution

        Returns:
            ExecutionResult

        Raises:
            ValidationError: pre-flight validation found errors
        """
        if not skip_validation:
            logger.info(f"=== VALIDATING {context.template.id} ===")
            validation = self.validate(context)
            if not validation.is_valid:
                for issue in validation.errors:
                    logger.error(f"[{issue.check_name}] {issue.message}")
                raise ValidationError(validation)
            for issue in validation.warnings:
                logger.warning(f"[{issue.check_name}] {issue.message}")

        logger.info(f"=== EXECUTING {context.template.id} ===")
        return self.engine.execute_template(context)

    def clone(self, source_org_id: str, target_org_id: str, record_id: str, object_type: str) -> CloneResult:
        return self.cloning.clone_record(source_org_id, target_org_id, record_id, object_type)

    @staticmethod
    def save_report(result: ExecutionResult, path: str) -> Path:
        """Write a run's result as JSON."""
        report_path = Path(path)
        report_path.parent.mkdir(parents=True, exist_ok=True)
        with open(report_path, "w") as f:
            json.dump(result.to_dict(), f, indent=2, default=str)
        logger.info(f"Report saved to {report_path}")
        return report_path


@dataclass
class ServiceContainer:
    """The constructed services of one process."""
    settings: EngineSettings
    credential_store: CredentialStore
    token_manager: TokenManager
    client: PlatformClient
    registry: TemplateRegistry
    validator: ValidationEngine
    engine: ExecutionEngine
    cloning: CloningService
    orchestrator: MigrationOrchestrator

    def close(self) -> None:
        self.token_manager.stop_scheduler()
        self.client.close()


def build_container(
    settings: Optional[EngineSettings] = None,
    credential_store: Optional[CredentialStore] = None,
    session: Optional[requests.Session] = None,
    template_dirs: Optional[List[str]] = None,
) -> ServiceContainer:
    """
    Build every service once and register the templates.

    Args:
        settings: Engine settings (read from the environment when omitted)
        credential_store: Where org credentials live (in memory when omitted)
        session: HTTP session shared by the OAuth client and platform client
        template_dirs: Extra directories of JSON templates to register

    Returns:
        ServiceContainer
    """
    settings = settings or EngineSettings.from_env()
    credential_store = credential_store or InMemoryCredentialStore()

    oauth_client = OAuthClient(settings, session=session)
    token_manager = TokenManager(credential_store, oauth_client, settings)
    client = PlatformClient(token_manager, settings, session=session)

    registry = TemplateRegistry()
    register_default_templates(registry)
    for directory in template_dirs or []:
        registry.load_directory(directory)

    validator = ValidationEngine(client, settings)
    engine = ExecutionEngine(client, settings)
    cloning = CloningService(client)
    orchestrator = MigrationOrchestrator(validator, engine, cloning)

    logger.info(f"Services ready: {len(registry)} template(s), API version {settings.api_version}")
    return ServiceContainer(
        settings=settings,
        credential_store=credential_store,
        token_manager=token_manager,
        client=client,
        registry=registry,
        validator=validator,
        engine=engine,
        cloning=cloning,
        orchestrator=orchestrator,
    )
