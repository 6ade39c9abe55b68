"""
Unit tests for the data model and project configuration.

Tests cover:
- Parsing and validating entity definitions
- Merging package data models with the core entities
- Relationship columns, module names and enum options
- Loading dxconfig.json and selecting environment modules
"""

import json

import pytest

from shared.errors import ConfigurationError, DataModelError
from shared.models.data_model import (
    CORE_ENTITIES,
    AttributeDefinition,
    get_core_data_model,
    get_enum_options,
    get_module_names,
    get_relationship_columns,
    get_relationship_property_name,
    load_data_model_file,
    merge_data_models,
    parse_data_model,
    validate_data_model,
)
from shared.models.dx_config import DatabaseConfig, DxConfig, load_dx_config
from tests.conftest import CRM_DATA_MODEL_JSON


# ============================================================================
# PARSING
# ============================================================================


class TestParseDataModel:
    """Test entity definition parsing."""

    def test_parse_valid_model(self):
        """Test that attributes and options are read with their aliases."""
        data_model = parse_data_model(CRM_DATA_MODEL_JSON)

        account = data_model["account"]
        assert account.module == "main"
        assert account.attributes["firstName"].allow_null is False
        assert account.attributes["firstName"].length_or_values == 50
        assert account.options.enforce_locking_constraints is True
        assert account.relationships == {"organisation": ["primary"]}

    def test_defaults(self):
        """Test defaults for omitted fields."""
        entity = parse_data_model({"note": {"attributes": {"body": {"type": "text"}}}})["note"]

        assert entity.module == "main"
        assert entity.relationships == {}
        assert entity.options.is_audit_enabled is True
        assert entity.attributes["body"].allow_null is True

    def test_invalid_entity_raises(self):
        """Test that a missing attribute type is rejected."""
        with pytest.raises(DataModelError) as exc_info:
            parse_data_model({"note": {"attributes": {"body": {"default": 1}}}})

        assert "note" in exc_info.value.message

    def test_non_object_raises(self):
        """Test that the data model must be an object."""
        with pytest.raises(DataModelError):
            parse_data_model(["account"])

    def test_load_data_model_file(self, tmp_path):
        """Test loading a data-model.json file."""
        path = tmp_path / "data-model.json"
        path.write_text(json.dumps(CRM_DATA_MODEL_JSON))

        assert set(load_data_model_file(path)) == {"account", "organisation", "region"}

    def test_load_missing_file_raises(self, tmp_path):
        """Test that a missing file is a configuration error."""
        with pytest.raises(ConfigurationError):
            load_data_model_file(tmp_path / "missing.json")

    def test_load_invalid_json_raises(self, tmp_path):
        """Test that malformed JSON is a configuration error."""
        path = tmp_path / "data-model.json"
        path.write_text("{not json")

        with pytest.raises(ConfigurationError):
            load_data_model_file(path)


# ============================================================================
# MERGING AND VALIDATION
# ============================================================================


class TestMergeDataModels:
    """Test merging package data models."""

    def test_core_entities_present(self):
        """Test the core model holds every required entity."""
        assert set(CORE_ENTITIES) <= set(get_core_data_model())

    def test_merge_tags_package_names(self, data_model):
        """Test each entity records the package that declared it."""
        assert data_model["globalIdentifier"].package_name == "core"
        assert data_model["account"].package_name == "crm"

    def test_merge_duplicate_entity_raises(self):
        """Test that an entity cannot be declared twice."""
        crm = parse_data_model(CRM_DATA_MODEL_JSON)

        with pytest.raises(DataModelError) as exc_info:
            merge_data_models(get_core_data_model(), {"crm": crm, "sales": crm})

        assert exc_info.value.details["packages"] == ["crm", "sales"]

    def test_merge_does_not_mutate_input(self):
        """Test the package models are copied."""
        crm = parse_data_model(CRM_DATA_MODEL_JSON)
        merge_data_models(get_core_data_model(), {"crm": crm})

        assert crm["account"].package_name is None

    def test_validate_complete_model(self, data_model):
        """Test a complete model passes validation."""
        validate_data_model(data_model)

    def test_validate_missing_core_entity(self, data_model):
        """Test that missing core entities are reported."""
        del data_model["auditLogEntry"]

        with pytest.raises(DataModelError) as exc_info:
            validate_data_model(data_model)

        assert exc_info.value.details["missing"] == ["auditLogEntry"]

    def test_validate_unknown_related_entity(self, data_model):
        """Test that relationships to unknown entities are reported."""
        del data_model["region"]

        with pytest.raises(DataModelError) as exc_info:
            validate_data_model(data_model)

        assert "region" in exc_info.value.details["missing"]


# ============================================================================
# HELPERS
# ============================================================================


class TestDataModelHelpers:
    """Test data model helper functions."""

    def test_relationship_property_name(self):
        """Test foreign key property names combine entity and relationship."""
        assert get_relationship_property_name("organisation", "primary") == "organisationPrimary"
        assert get_relationship_property_name("userRole", "main") == "userRoleMain"

    def test_relationship_columns(self, data_model):
        """Test every relationship becomes a column."""
        assert get_relationship_columns(data_model["account"]) == {"organisationPrimary": "organisation"}

    def test_module_names(self, data_model):
        """Test distinct module names."""
        assert get_module_names(data_model) == ["main"]

    def test_enum_options(self):
        """Test enum options are parsed from the quoted list."""
        attribute = AttributeDefinition(type="enum", length_or_values="'a', 'b',\"c\"")
        assert get_enum_options(attribute) == ["a", "b", "c"]

    def test_enum_options_for_non_enum(self):
        """Test non-enum attributes have no options."""
        assert get_enum_options(AttributeDefinition(type="varchar", length_or_values=50)) == []


# ============================================================================
# PROJECT CONFIGURATION
# ============================================================================


class TestDxConfig:
    """Test dxconfig.json loading."""

    @pytest.fixture
    def raw_config(self):
        return {
            "appName": "crm-app",
            "environmentArray": {
                "development": {
                    "modules": {"main": {"user": "dbuser", "database": "crm", "password": "secret"}}
                }
            },
            "packages": {"crm": {"packageRoot": "packages/crm", "endpoint": "packages.crm.endpoint:CrmEndpoint"}},
        }

    def test_load_config(self, tmp_path, raw_config):
        """Test aliases and defaults."""
        path = tmp_path / "dxconfig.json"
        path.write_text(json.dumps(raw_config))

        config = load_dx_config(path)

        assert config.app_name == "crm-app"
        assert config.packages["crm"].package_root == "packages/crm"
        assert config.data_model_path == "dx-config/data-model.json"
        assert config.web_config.port == 3000

    def test_get_module_configs(self, raw_config):
        """Test module settings for an environment."""
        config = DxConfig.model_validate(raw_config)

        modules = config.get_module_configs("development")

        assert modules["main"].port == 5432
        assert modules["main"].host == "localhost"

    def test_unknown_environment_raises(self, raw_config):
        """Test that an unknown environment is a configuration error."""
        config = DxConfig.model_validate(raw_config)

        with pytest.raises(ConfigurationError) as exc_info:
            config.get_module_configs("production")

        assert "development" in exc_info.value.message

    def test_environment_without_modules_raises(self, tmp_path):
        """Test that every environment needs a module."""
        path = tmp_path / "dxconfig.json"
        path.write_text(json.dumps({"environmentArray": {"development": {"modules": {}}}}))

        with pytest.raises(ConfigurationError):
            load_dx_config(path)

    def test_missing_config_raises(self, tmp_path):
        """Test that a missing file is a configuration error."""
        with pytest.raises(ConfigurationError):
            load_dx_config(tmp_path / "dxconfig.json")

    def test_connect_kwargs(self):
        """Test asyncpg connection arguments."""
        config = DatabaseConfig(user="dbuser", database="crm", ssl=True)

        kwargs = config.connect_kwargs()

        assert kwargs["database"] == "crm"
        assert kwargs["ssl"] == "require"
        assert "ssl" not in DatabaseConfig(user="dbuser", database="crm").connect_kwargs()
