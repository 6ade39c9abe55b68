"""
Shared fixtures: a small CRM data model merged with the core entities, a
mocked database connector and a data layer over both.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from orm.src.data_layer import DataLayer
from orm.src.db_connector import DbConnector
from shared.models.data_model import get_core_data_model, merge_data_models, parse_data_model

CRM_DATA_MODEL_JSON = {
    "account": {
        "module": "main",
        "attributes": {
            "firstName": {"type": "varchar", "lengthOrValues": 50, "allowNull": False},
            "lastName": {"type": "varchar", "lengthOrValues": 50},
            "age": {"type": "int"},
            "status": {"type": "enum", "lengthOrValues": "'active','inactive'", "default": "active"},
            "balance": {"type": "decimal", "lengthOrValues": "10,2", "default": "0.00"},
            "settings": {"type": "json"},
            "dateOfBirth": {"type": "date"},
            "lastUpdated": {"type": "datetime", "default": "CURRENT_TIMESTAMP"},
        },
        "relationships": {"organisation": ["primary"]},
        "indexes": [],
        "options": {"enforceLockingConstraints": True, "isAuditEnabled": True},
    },
    "organisation": {
        "module": "main",
        "attributes": {
            "name": {"type": "varchar", "lengthOrValues": 100, "allowNull": False},
            "country": {"type": "varchar", "lengthOrValues": 50},
        },
        "relationships": {"region": ["location"]},
        "indexes": [],
        "options": {"enforceLockingConstraints": False, "isAuditEnabled": False},
    },
    "region": {
        "module": "main",
        "attributes": {
            "name": {"type": "varchar", "lengthOrValues": 100},
        },
        "relationships": {},
        "indexes": [],
        "options": {"enforceLockingConstraints": False, "isAuditEnabled": False},
    },
}


@pytest.fixture
def data_model():
    """Core entities plus the CRM package entities."""
    return merge_data_models(get_core_data_model(), {"crm": parse_data_model(CRM_DATA_MODEL_JSON, "crm")})


@pytest.fixture
def connector():
    """DbConnector with query and execute replaced by async mocks."""
    mock_connector = MagicMock(spec=DbConnector)
    mock_connector.query = AsyncMock(return_value=[])
    mock_connector.execute = AsyncMock(return_value=1)
    mock_connector.check_db_connection = AsyncMock(return_value={"main": True})
    return mock_connector


@pytest.fixture
def data_layer(connector, data_model):
    return DataLayer(connector, data_model)
