"""
Unit tests for the framework instance.

Tests cover:
- Merging the project and package data models
- Endpoint class references
- Package options
- Startup, shutdown and token issuance
"""

import json
import sys
from unittest.mock import AsyncMock, patch

import pytest

from api.src.config import Settings
from api.src.endpoints.endpoint_base import EndpointBase
from api.src.services.dx_app import DxApp, apply_web_config, import_endpoint_class, load_project_data_model
from shared.errors import ConfigurationError, DataModelError
from shared.models.dx_config import DxConfig, WebConfig
from tests.conftest import CRM_DATA_MODEL_JSON

DATABASE = {"user": "dbuser", "database": "crm"}


@pytest.fixture
def project_root(tmp_path):
    """Project with a data model and a crm package that ships its own."""
    (tmp_path / "dx-config").mkdir()
    (tmp_path / "dx-config" / "data-model.json").write_text(json.dumps({
        "invoice": {"attributes": {"total": {"type": "decimal", "lengthOrValues": "10,2"}}},
    }))
    (tmp_path / "packages" / "crm").mkdir(parents=True)
    (tmp_path / "packages" / "crm" / "data-model.json").write_text(json.dumps(CRM_DATA_MODEL_JSON))
    return tmp_path


def make_config(web_config=None, **packages):
    raw = {
        "appName": "crm-app",
        "environmentArray": {"development": {"modules": {"main": DATABASE}}},
        "packages": packages,
    }
    if web_config is not None:
        raw["webConfig"] = web_config
    return DxConfig.model_validate(raw)


@pytest.fixture
def settings():
    return Settings(jwt_expires_in_minutes=5)


# ============================================================================
# DATA MODEL
# ============================================================================


class TestLoadProjectDataModel:
    """Test data model merging."""

    def test_project_and_package_entities(self, project_root):
        """Test entities are tagged with the package that declared them."""
        data_model = load_project_data_model(make_config(crm={"packageRoot": "packages/crm"}), project_root)

        assert data_model["invoice"].package_name == "project"
        assert data_model["account"].package_name == "crm"
        assert data_model["globalIdentifier"].package_name == "core"

    def test_package_without_data_model(self, project_root):
        data_model = load_project_data_model(make_config(billing={"packageRoot": "packages/billing"}), project_root)
        assert "account" not in data_model

    def test_duplicate_entity(self, project_root):
        """Test two packages cannot declare the same entity."""
        other = project_root / "packages" / "copy"
        other.mkdir()
        (other / "data-model.json").write_text(json.dumps(CRM_DATA_MODEL_JSON))

        config = make_config(crm={"packageRoot": "packages/crm"}, copy={"packageRoot": "packages/copy"})
        with pytest.raises(DataModelError):
            load_project_data_model(config, project_root)


# ============================================================================
# ENDPOINT CLASSES
# ============================================================================


class TestEndpointClasses:
    """Test endpoint class references."""

    def test_import(self):
        assert import_endpoint_class("api.src.endpoints.endpoint_base:EndpointBase") is EndpointBase

    @pytest.mark.parametrize("reference", [
        "no-colon",
        "missing.module.path:Endpoint",
        "api.src.config:Settings",
    ])
    def test_invalid_reference(self, reference):
        with pytest.raises(ConfigurationError):
            import_endpoint_class(reference)

    def test_package_without_endpoint_uses_base(self, settings, project_root, connector):
        dx_app = DxApp(
            settings,
            make_config(crm={"packageRoot": "packages/crm"}),
            project_root=project_root,
            connector=connector,
        )

        assert dx_app.get_endpoint_classes() == [("crm", EndpointBase)]
        assert dx_app.app_name == "crm-app"

    def test_package_options(self, settings, project_root, connector):
        config = make_config(crm={"packageRoot": "packages/crm", "options": {"currency": "EUR"}})
        dx_app = DxApp(settings, config, project_root=project_root, connector=connector)

        assert dx_app.get_package_options("crm") == {"currency": "EUR"}
        with pytest.raises(ConfigurationError):
            dx_app.get_package_options("billing")


# ============================================================================
# LIFECYCLE
# ============================================================================


class TestLifecycle:
    """Test startup, shutdown and tokens."""

    @pytest.fixture
    def dx_app(self, settings, project_root, connector):
        connector.connect = AsyncMock()
        connector.close = AsyncMock()
        return DxApp(settings, make_config(), project_root=project_root, connector=connector)

    @pytest.mark.asyncio
    async def test_startup_and_shutdown(self, dx_app, connector):
        await dx_app.startup()
        assert dx_app.is_started is True
        connector.connect.assert_awaited_once()

        await dx_app.shutdown()
        assert dx_app.is_started is False
        connector.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_startup_syncs_database_when_enabled(self, project_root, connector):
        connector.connect = AsyncMock()
        settings = Settings(database_sync_on_startup=True)
        dx_app = DxApp(settings, make_config(), project_root=project_root, connector=connector)

        with patch("api.src.services.dx_app.sync_database", new=AsyncMock()) as mock_sync:
            await dx_app.startup()

        mock_sync.assert_awaited_once_with(connector, dx_app.data_model)

    @pytest.mark.asyncio
    async def test_issue_jwt(self, dx_app):
        """Test tokens carry the configured lifetime and looked up groupings."""
        dx_app.global_identifier_repo.get_global_identifier = AsyncMock(return_value={"isSuperUser": False})
        dx_app.global_identifier_repo.get_global_identifier_groupings_readable = AsyncMock(return_value=["sales"])

        token = await dx_app.issue_jwt("abc")

        payload = dx_app.jwt_wrapper.get_jwt_payload(token)
        assert payload["globalIdentifierGroupings"] == ["sales"]
        assert payload["exp"] - payload["iat"] in (299, 300, 301)


# ============================================================================
# WEB CONFIGURATION
# ============================================================================


class TestWebConfig:
    """Test the webConfig block of dxconfig.json."""

    def test_web_config_is_the_default(self):
        settings = apply_web_config(Settings(), WebConfig(port=4100, cors_allowed_list=["https://app.example.com"]))

        assert settings.web_server_port == 4100
        assert settings.cors_allowed_list == ["https://app.example.com"]

    def test_explicit_settings_win(self):
        """Test DX_ settings override the project file."""
        settings = apply_web_config(Settings(web_server_port=9000), WebConfig(port=4100, cors_allowed_list=["x"]))

        assert settings.web_server_port == 9000
        assert settings.cors_allowed_list == ["x"]

    def test_environment_variable_wins(self, monkeypatch):
        monkeypatch.setenv("DX_WEB_SERVER_PORT", "9100")

        assert apply_web_config(Settings(), WebConfig(port=4100)).web_server_port == 9100

    def test_dx_app_settings(self, project_root, connector):
        config = make_config(web_config={"port": 4100, "corsAllowedList": ["https://app.example.com"]})
        dx_app = DxApp(Settings(), config, project_root=project_root, connector=connector)

        assert dx_app.settings.web_server_port == 4100
        assert dx_app.settings.cors_allowed_list == ["https://app.example.com"]


# ============================================================================
# PROJECT MODULES
# ============================================================================


class TestProjectModules:
    """Test endpoints living in the project directory."""

    @pytest.fixture
    def clean_imports(self, monkeypatch):
        monkeypatch.setattr(sys, "path", list(sys.path))
        yield
        for name in list(sys.modules):
            if name.split(".")[0] == "packages":
                del sys.modules[name]

    def test_endpoint_imported_from_project_root(self, settings, project_root, connector, clean_imports):
        """Test package endpoints import without the project root on sys.path beforehand."""
        (project_root / "packages" / "__init__.py").write_text("")
        (project_root / "packages" / "crm" / "__init__.py").write_text("")
        (project_root / "packages" / "crm" / "endpoint.py").write_text(
            "from api.src.endpoints.endpoint_base import EndpointBase\n\n\n"
            "class CrmEndpoint(EndpointBase):\n"
            "    endpoint_name = \"crm\"\n"
        )
        config = make_config(crm={"packageRoot": "packages/crm", "endpoint": "packages.crm.endpoint:CrmEndpoint"})

        dx_app = DxApp(settings, config, project_root=project_root, connector=connector)

        (package_name, endpoint_class), = dx_app.get_endpoint_classes()
        assert package_name == "crm"
        assert endpoint_class.__name__ == "CrmEndpoint"
        assert str(project_root.resolve()) in sys.path
