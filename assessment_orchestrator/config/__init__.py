"""Configuration module for assessment-orchestrator."""

from assessment_orchestrator.config.settings import OrchestratorConfig, load_config

__all__ = ["OrchestratorConfig", "load_config"]
