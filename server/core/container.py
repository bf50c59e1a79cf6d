"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from services.access import AccessPolicy
from services.chatops import CommandDispatcher
from services.deployment import DeploymentRegistry, ProvisioningConfig, build_target_profiles
from services.github import CheckAggregator
from services.slack_client import SlackClient


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Upstream CI
    check_aggregator = providers.Singleton(
        CheckAggregator.from_settings,
        settings=settings,
    )

    # Deployment engine (process-local, one per worker)
    provisioning_config = providers.Singleton(
        ProvisioningConfig.from_settings,
        settings=settings,
    )

    target_profiles = providers.Singleton(
        build_target_profiles,
        settings=settings,
    )

    registry = providers.Singleton(
        DeploymentRegistry,
        config=provisioning_config,
        profiles=target_profiles,
        aggregator=check_aggregator,
    )

    # Chat
    access_policy = providers.Singleton(
        AccessPolicy.from_settings,
        settings=settings,
    )

    slack_client = providers.Singleton(
        SlackClient,
        token=settings.provided.slack_bot_token,
        api_url=settings.provided.slack_api_url,
    )

    dispatcher = providers.Singleton(
        CommandDispatcher,
        registry=registry,
        access=access_policy,
    )


# Global container instance
container = Container()
