"""Base class for package controllers."""

from typing import Any, Dict

from orm.src.data_layer import DataLayer


class PackageControllerBase:
    """
    Business logic shared by the endpoints of a package.

    Controllers receive the framework instance and the options configured
    for their package in dxconfig.json.
    """

    def __init__(self, dx_app, package_name: str):
        """
        Args:
            dx_app: Framework instance
            package_name: Name of the package in dxconfig.json

        Raises:
            ValueError: If no framework instance is given
        """
        if dx_app is None:
            raise ValueError("A DxApp instance is required to create a package controller")

        self.dx_app = dx_app
        self.package_name = package_name
        self.package_options: Dict[str, Any] = dx_app.get_package_options(package_name)

    def get_data_layer(self) -> DataLayer:
        return self.dx_app.data_layer
