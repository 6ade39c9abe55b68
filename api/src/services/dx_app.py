"""
Framework instance.

DxApp wires the project together: it loads dxconfig.json and the package
data models, merges them with the core entities and builds the database
connector, data layer, query model, JWT wrapper and global identifier
repository. The web service, the CLI and package controllers all reach the
framework through one DxApp.
"""

import importlib
import structlog
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from api.src.config import Settings
from api.src.endpoints.endpoint_base import EndpointBase
from api.src.repositories.global_identifier_repo import GlobalIdentifierRepository
from api.src.services.jwt_wrapper import JwtWrapper
from orm.src.data_layer import DataLayer
from orm.src.db_connector import DbConnector
from orm.src.query_builder import QueryModel
from orm.src.schema_sync import sync_database
from shared.errors import ConfigurationError
from shared.models.data_model import (
    DataModel,
    get_core_data_model,
    load_data_model_file,
    merge_data_models,
    validate_data_model,
)
from shared.models.dx_config import DxConfig, WebConfig, load_dx_config

logger = structlog.get_logger(__name__)

PACKAGE_DATA_MODEL_FILE = "data-model.json"
PROJECT_PACKAGE = "project"


def import_endpoint_class(reference: str) -> Type[EndpointBase]:
    """
    Import an endpoint class from a "module.path:ClassName" reference.

    Raises:
        ConfigurationError: If the reference cannot be imported or is not an EndpointBase subclass
    """
    module_path, _, class_name = reference.partition(":")
    if not module_path or not class_name:
        raise ConfigurationError(f"Invalid endpoint reference '{reference}'. Expected 'module.path:ClassName'")

    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import endpoint module '{module_path}': {e}") from e

    endpoint_class = getattr(module, class_name, None)
    if not isinstance(endpoint_class, type) or not issubclass(endpoint_class, EndpointBase):
        raise ConfigurationError(f"'{reference}' is not an EndpointBase subclass")
    return endpoint_class


def load_project_data_model(dx_config: DxConfig, project_root: Union[str, Path]) -> DataModel:
    """
    Merge the core entities, the project data model and every package
    data model.

    Relative paths in the configuration are resolved against project_root.
    Packages that ship no data-model.json contribute no entities.

    Raises:
        DataModelError: If an entity is declared more than once
    """
    project_root = Path(project_root)

    def resolve(path: Union[str, Path]) -> Path:
        path = Path(path)
        return path if path.is_absolute() else project_root / path

    package_models: Dict[str, DataModel] = {}

    project_model_path = resolve(dx_config.data_model_path)
    if project_model_path.is_file():
        package_models[PROJECT_PACKAGE] = load_data_model_file(project_model_path)

    for package_name, package in dx_config.packages.items():
        package_model_path = resolve(package.package_root) / PACKAGE_DATA_MODEL_FILE
        if package_model_path.is_file():
            package_models[package_name] = load_data_model_file(package_model_path)
        else:
            logger.debug("package_data_model_missing", package=package_name, path=str(package_model_path))

    return merge_data_models(get_core_data_model(), package_models)


def apply_web_config(settings: Settings, web_config: WebConfig) -> Settings:
    """
    Use the webConfig block of dxconfig.json for the port and allowed CORS
    origins. DX_WEB_SERVER_PORT and DX_CORS_ALLOWED_LIST still win when set.
    """
    update: Dict[str, Any] = {}
    if "web_server_port" not in settings.model_fields_set:
        update["web_server_port"] = web_config.port
    if "cors_allowed_list" not in settings.model_fields_set:
        update["cors_allowed_list"] = list(web_config.cors_allowed_list)
    return settings.model_copy(update=update) if update else settings


class DxApp:
    """Project-wide framework instance."""

    def __init__(
        self,
        settings: Settings,
        dx_config: Optional[DxConfig] = None,
        project_root: Union[str, Path, None] = None,
        connector: Optional[DbConnector] = None,
    ):
        """
        Initialize the framework instance.

        Args:
            settings: Application settings
            dx_config: Project configuration; loaded from settings.config_path if None
            project_root: Directory that package roots and the data model path
                are relative to; defaults to the working directory
            connector: Database connector; built from the configured
                environment if None

        Raises:
            ConfigurationError: If the configuration or an endpoint class is invalid
            DataModelError: If an entity is declared more than once
        """
        self.project_root = Path(project_root) if project_root is not None else Path.cwd()
        self.dx_config = dx_config or load_dx_config(self._resolve(settings.config_path))
        self.settings = apply_web_config(settings, self.dx_config.web_config)
        self.app_name = self.dx_config.app_name or settings.app_name

        self.data_model: DataModel = self.load_data_model()

        self.connector = connector or DbConnector(
            self.dx_config.get_module_configs(settings.environment),
            min_pool_size=settings.database_min_pool_size,
            max_pool_size=settings.database_max_pool_size,
            command_timeout=settings.database_command_timeout,
        )
        self.data_layer = DataLayer(self.connector, self.data_model)
        self.query_model = QueryModel(self.data_layer, debug_mode=settings.debug_mode)
        self.global_identifier_repo = GlobalIdentifierRepository(self.data_layer)
        self.jwt_wrapper = JwtWrapper(
            settings.jwt_secret,
            self.app_name,
            algorithm=settings.jwt_algorithm,
            identifier_service=self.global_identifier_repo,
        )

        self.endpoint_classes: List[Tuple[str, Type[EndpointBase]]] = self._resolve_endpoint_classes()
        self.is_started = False

    def _resolve(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        return path if path.is_absolute() else self.project_root / path

    # ========================================================================
    # Data Model
    # ========================================================================

    def load_data_model(self) -> DataModel:
        return load_project_data_model(self.dx_config, self.project_root)

    def get_data_model(self) -> DataModel:
        return self.data_model

    # ========================================================================
    # Packages
    # ========================================================================

    def _add_project_root_to_path(self) -> None:
        """Make the generated packages and generated_base modules importable."""
        project_root = str(self.project_root.resolve())
        if project_root not in sys.path:
            sys.path.insert(0, project_root)
            importlib.invalidate_caches()

    def _resolve_endpoint_classes(self) -> List[Tuple[str, Type[EndpointBase]]]:
        endpoint_classes = []
        for package_name, package in self.dx_config.packages.items():
            endpoint_class = EndpointBase
            if package.endpoint:
                self._add_project_root_to_path()
                endpoint_class = import_endpoint_class(package.endpoint)
            endpoint_classes.append((package_name, endpoint_class))
        return endpoint_classes

    def get_endpoint_classes(self) -> List[Tuple[str, Type[EndpointBase]]]:
        """(package name, endpoint class) for every configured package."""
        return list(self.endpoint_classes)

    def get_package_options(self, package_name: str) -> Dict[str, Any]:
        """
        Options configured for a package.

        Raises:
            ConfigurationError: If the package is not configured
        """
        if package_name not in self.dx_config.packages:
            raise ConfigurationError(f"Package '{package_name}' is not configured")
        return dict(self.dx_config.packages[package_name].options)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def startup(self) -> None:
        """
        Connect to every database module, optionally create missing tables
        and validate the data model.
        """
        logger.info(
            "dx_app_starting",
            app_name=self.app_name,
            environment=self.settings.environment,
            entities=len(self.data_model),
        )

        await self.connector.connect()

        if self.settings.database_sync_on_startup:
            await sync_database(self.connector, self.data_model)

        validate_data_model(self.data_model)
        self.is_started = True
        logger.info("dx_app_started", app_name=self.app_name)

    async def shutdown(self) -> None:
        await self.connector.close()
        self.is_started = False
        logger.info("dx_app_stopped", app_name=self.app_name)

    async def check_db_connection(self) -> Dict[str, bool]:
        return await self.connector.check_db_connection()

    # ========================================================================
    # Identity
    # ========================================================================

    async def get_global_identifier(self, unique_identifier: str) -> Optional[Dict[str, Any]]:
        return await self.global_identifier_repo.get_global_identifier(unique_identifier)

    async def get_global_identifier_groupings_readable(self, unique_identifier: str) -> List[str]:
        return await self.global_identifier_repo.get_global_identifier_groupings_readable(unique_identifier)

    async def issue_jwt(self, unique_identifier: str) -> str:
        """Issue a token for a global identifier with the configured lifetime."""
        expires_in = self.settings.jwt_expires_in_minutes * 60 or None
        return await self.jwt_wrapper.issue_jwt(unique_identifier, expires_in=expires_in)
