"""Framework services.

This package contains the framework instance, JWT handling and the base
class for package controllers.
"""
