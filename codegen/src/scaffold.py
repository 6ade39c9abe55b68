"""
Project initialisation.

Creates the minimum set of files a new project needs: the project
configuration, a starter data model, the packages directory and an example
environment file.
"""

import json
import structlog
from pathlib import Path
from typing import Any, Dict, List, Union

logger = structlog.get_logger(__name__)

CONFIG_DIR = "dx-config"
CONFIG_FILE = "dxconfig.json"
DATA_MODEL_FILE = "data-model.json"
PACKAGES_DIR = "packages"
ENV_EXAMPLE_FILE = ".env.example"


def _get_database_module(app_name: str) -> Dict[str, Any]:
    return {
        "host": "localhost",
        "user": "dbuser",
        "password": "",
        "database": app_name.replace("-", "_"),
        "port": 5432,
        "ssl": False,
    }


def get_default_config(app_name: str) -> Dict[str, Any]:
    """dxconfig.json content for a new project."""
    return {
        "appName": app_name,
        "environmentArray": {
            "development": {"modules": {"main": _get_database_module(app_name)}},
            "production": {"modules": {"main": {**_get_database_module(app_name), "ssl": True}}},
        },
        "dataModelPath": f"{CONFIG_DIR}/{DATA_MODEL_FILE}",
        "packages": {},
        "webConfig": {"port": 3000, "corsAllowedList": ["*"]},
    }


DEFAULT_DATA_MODEL: Dict[str, Any] = {
    "account": {
        "module": "main",
        "attributes": {
            "firstName": {"type": "varchar", "lengthOrValues": 50},
            "lastName": {"type": "varchar", "lengthOrValues": 50},
            "emailAddress": {"type": "varchar", "lengthOrValues": 150, "allowNull": False},
            "cellNumber": {"type": "varchar", "lengthOrValues": 25},
            "lastUpdated": {"type": "datetime", "default": "CURRENT_TIMESTAMP"},
        },
        "relationships": {},
        "indexes": [
            {"attribute": "emailAddress", "indexName": "account_email_unique", "indexChoice": "unique"}
        ],
        "options": {"enforceLockingConstraints": True, "isAuditEnabled": True},
    }
}


def get_env_example(app_name: str) -> str:
    return "\n".join([
        "# Copy to .env and adjust",
        f"DX_APP_NAME={app_name}",
        "DX_ENVIRONMENT=development",
        f"DX_CONFIG_PATH={CONFIG_DIR}/{CONFIG_FILE}",
        "DX_WEB_SERVER_PORT=3000",
        "DX_JWT_SECRET=change-me-to-a-random-string-of-32-chars-or-more",
        "DX_JWT_EXPIRES_IN_MINUTES=0",
        "DX_DATABASE_SYNC_ON_STARTUP=false",
        "DX_LOG_LEVEL=INFO",
        "DX_LOG_FORMAT=json",
        "",
    ])


def init_project(root: Union[str, Path], app_name: str = "dx-app", force: bool = False) -> List[Path]:
    """
    Create the configuration files and directories of a new project.

    Args:
        root: Project root directory, created if missing
        app_name: Application name written to the configuration
        force: Overwrite files that already exist

    Returns:
        Paths of the files and directories created
    """
    root = Path(root)
    created: List[Path] = []

    files = {
        root / CONFIG_DIR / CONFIG_FILE: json.dumps(get_default_config(app_name), indent=4) + "\n",
        root / CONFIG_DIR / DATA_MODEL_FILE: json.dumps(DEFAULT_DATA_MODEL, indent=4) + "\n",
        root / ENV_EXAMPLE_FILE: get_env_example(app_name),
    }

    for path, content in files.items():
        if path.exists() and not force:
            logger.info("scaffold_file_exists", path=str(path))
            continue
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        created.append(path)
        logger.info("scaffold_file_created", path=str(path))

    packages_dir = root / PACKAGES_DIR
    if not packages_dir.is_dir():
        packages_dir.mkdir(parents=True)
        created.append(packages_dir)

    return created
