"""Application configuration."""
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Security
    api_key: str = ""

    # Service Configuration
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"

    # CORS
    cors_origins: str = ""  # Comma-separated list of allowed origins, empty = block all external

    # Kubernetes
    kubectl_binary: str = "kubectl"
    kubectl_timeout: int = 30  # seconds
    system_namespaces: List[str] = [
        "default",
        "azure-system",
        "argo",
        "istio-system",
    ]

    # Generated manifests
    label_prefix: str = "idp-platform"
    managed_by: str = "idp-platform"
    shared_service_namespaces: List[str] = ["ingress-nginx", "monitoring"]

    # Workflow engine (Argo Server REST API)
    workflow_engine_url: str = "http://argo-server.argo:2746"
    workflow_engine_token: str = ""
    workflow_engine_timeout: float = 15.0  # seconds
    workflow_namespace: str = "argo"
    workflow_service_account: str = "idp-backend-sa"
    create_template: str = "namespace-provisioning"
    update_template: str = "namespace-update"
    delete_template: str = "namespace-deletion"

    # Transient error handling
    retry_attempts: int = 3
    retry_backoff_seconds: float = 0.5

    # Live status
    status_poll_interval: float = 5.0  # seconds

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


settings = Settings()
