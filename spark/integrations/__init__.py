"""Integrations and integration groups."""

from spark.integrations.config_schema import ConfigField, validate_configuration
from spark.integrations.models import Integration, IntegrationGroup
from spark.integrations.repository import InMemoryIntegrationRepository, IntegrationRepository

__all__ = [
    "ConfigField",
    "InMemoryIntegrationRepository",
    "Integration",
    "IntegrationGroup",
    "IntegrationRepository",
    "validate_configuration",
]
