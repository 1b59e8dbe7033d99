"""Application configuration using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file and override existing env vars
load_dotenv(override=True)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # AWS
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None
    aws_region: str = "us-west-2"
    aws_max_attempts: int = 4  # botocore standard retry mode
    aws_connect_timeout: float = 10.0
    aws_read_timeout: float = 60.0

    # Routing
    deployment_domain: str | None = None  # e.g. "apps.example.com"
    ecs_acm_certificate_arn: str | None = None
    eb_acm_certificate_arn: str | None = None
    shared_alb_enabled: bool = True

    # Vercel DNS
    vercel_token: str = Field(default="")
    vercel_team_id: str | None = None
    vercel_domain: str | None = None

    # Workspace
    clone_root: str = Field(default="/tmp/smartdeploy")
    clone_timeout_seconds: int = 300
    build_timeout_seconds: int = 900

    # Virtual machine target
    vm_instance_type: str = "t3.micro"
    vm_ami_name_pattern: str = "al2023-ami-*-x86_64"
    ssm_role_name: str = "smartdeploy-ec2-ssm-role"
    ssm_instance_profile_name: str = "smartdeploy-ec2-ssm-profile"

    # Container target
    ecs_cpu: str = "256"
    ecs_memory: str = "512"
    ecs_execution_role: str = "ecsTaskExecutionRole"
    ecs_desired_count: int = 1
    codebuild_role_name: str = "smart-deploy-codebuild-role"
    codebuild_image: str = "aws/codebuild/standard:7.0"

    # PaaS target
    eb_instance_profile: str = "aws-elasticbeanstalk-ec2-role"
    eb_service_role: str = "aws-elasticbeanstalk-service-role"

    # Database
    db_instance_class: str = "db.t3.micro"
    db_allocated_storage: int = 20

    # Poll budgets (interval seconds, attempts)
    instance_running_interval: float = 5
    instance_running_attempts: int = 60
    vm_warmup_seconds: float = 90
    health_probe_interval: float = 15
    health_probe_attempts: int = 24
    ssm_agent_interval: float = 10
    ssm_agent_attempts: int = 18
    ssm_command_interval: float = 2
    ssm_command_attempts: int = 450
    service_log_lines: int = 200
    service_log_attempts: int = 30
    target_health_interval: float = 10
    target_health_attempts: int = 30
    database_interval: float = 15
    database_attempts: int = 60
    codebuild_interval: float = 5
    codebuild_attempts: int = 180
    ecs_stable_interval: float = 10
    ecs_stable_attempts: int = 30
    amplify_interval: float = 5
    amplify_attempts: int = 60
    beanstalk_interval: float = 10
    beanstalk_attempts: int = 60

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["console", "json"] = "console"
    log_directory: str = "logs"
    log_file_name: str = "smartdeploy.log"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def dns_enabled(self) -> bool:
        return bool(self.vercel_token and self.vercel_domain)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
