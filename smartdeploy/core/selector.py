"""Deployment target selection.

Pure functions only: the same profile always yields the same decision,
which keeps redeploys on the target they started on.
"""

from smartdeploy.core.exceptions import ConfigurationError
from smartdeploy.models.deployment import TargetDecision, TargetPlatform
from smartdeploy.models.project import ProjectProfile

LANGUAGE_ALIASES = {
    "javascript": "node",
    "typescript": "node",
    "nodejs": "node",
    "js": "node",
    "ts": "node",
    "py": "python",
    "golang": "go",
    "csharp": "dotnet",
    "c#": "dotnet",
    ".net": "dotnet",
    "kotlin": "java",
}

PAAS_LANGUAGES = frozenset({"node", "python", "java", "go", "dotnet", "php", "ruby"})
# Languages that only run well from a container image
CONTAINER_LANGUAGES = frozenset({"rust"})
# Frameworks whose server build is too long/heavy for the PaaS bundle flow
LONG_BUILD_FRAMEWORKS = frozenset({"nextjs"})

NO_LANGUAGE_WARNING = "No language detected; defaulting to full VM control"


def normalize_language(language: str | None) -> str:
    value = (language or "").strip().lower()
    return LANGUAGE_ALIASES.get(value, value)


def _is_static(profile: ProjectProfile, language: str) -> bool:
    if language != "node" or profile.has_container_file:
        return False
    if not profile.build_cmd or profile.run_cmd:
        return False
    if profile.framework in LONG_BUILD_FRAMEWORKS and not profile.is_static_export:
        return False
    return True


def _is_paas(profile: ProjectProfile, language: str) -> bool:
    return (
        language in PAAS_LANGUAGES
        and not profile.has_container_file
        and profile.framework not in LONG_BUILD_FRAMEWORKS
    )


def select_target(profile: ProjectProfile) -> TargetDecision:
    """Choose the simplest compatible hosting target for a project."""
    language = normalize_language(profile.language)

    # Hard overrides
    if profile.is_multi_service or len(profile.services) > 1:
        return TargetDecision(
            target=TargetPlatform.CONTAINER_PLATFORM,
            reason=f"Multi-service layout ({max(len(profile.services), 2)} services) needs independently deployed containers",
        )

    if profile.uses_database:
        return TargetDecision(
            target=TargetPlatform.CONTAINER_PLATFORM,
            reason="Database dependency is wired through the container platform",
            warnings=("A managed database instance will be provisioned and billed separately",),
        )

    if profile.uses_websockets:
        if profile.prefers_full_control:
            return TargetDecision(
                target=TargetPlatform.VIRTUAL_MACHINE,
                reason="Realtime sockets with full VM control requested",
            )
        return TargetDecision(
            target=TargetPlatform.CONTAINER_PLATFORM,
            reason="Realtime sockets need long-lived connections",
        )

    if profile.prefers_full_control:
        return TargetDecision(
            target=TargetPlatform.VIRTUAL_MACHINE,
            reason="Managed platforms opted out",
        )

    # Simplest compatible platform wins
    if _is_static(profile, language):
        return TargetDecision(
            target=TargetPlatform.STATIC_SITE,
            reason="Build command with no run command produces static assets",
        )

    if _is_paas(profile, language):
        return TargetDecision(
            target=TargetPlatform.PAAS,
            reason=f"Supported {language} application without a Dockerfile",
        )

    if profile.has_container_file:
        return TargetDecision(
            target=TargetPlatform.CONTAINER_PLATFORM,
            reason="Dockerfile present",
        )

    if profile.framework in LONG_BUILD_FRAMEWORKS:
        return TargetDecision(
            target=TargetPlatform.CONTAINER_PLATFORM,
            reason=f"{profile.framework} server build runs best as a container image",
        )

    if language in CONTAINER_LANGUAGES:
        return TargetDecision(
            target=TargetPlatform.CONTAINER_PLATFORM,
            reason=f"{language} application runs from a container image",
            warnings=(f"No Dockerfile found; one will be generated for {language}",),
        )

    if not language:
        return TargetDecision(
            target=TargetPlatform.VIRTUAL_MACHINE,
            reason="Fallback target",
            warnings=(NO_LANGUAGE_WARNING,),
        )

    return TargetDecision(
        target=TargetPlatform.VIRTUAL_MACHINE,
        reason="Fallback target",
        warnings=(f"Unsupported language '{language}'; defaulting to full VM control",),
    )


def resolve_target(
    profile: ProjectProfile, requested: TargetPlatform | None = None
) -> TargetDecision:
    """Select a target, or validate one chosen by the user.

    Raises:
        ConfigurationError: If the requested target cannot host the project
    """
    if requested is None:
        return select_target(profile)

    language = normalize_language(profile.language)
    problems: list[str] = []

    if requested in (TargetPlatform.STATIC_SITE, TargetPlatform.PAAS):
        if profile.uses_websockets:
            problems.append("realtime sockets need a container or VM target")
        if profile.is_multi_service or len(profile.services) > 1:
            problems.append("multi-service layouts need the container platform")

    if requested == TargetPlatform.STATIC_SITE and not profile.build_cmd:
        problems.append("static sites need a build command")
    if requested == TargetPlatform.PAAS and language not in PAAS_LANGUAGES:
        problems.append(f"language '{language or 'unknown'}' is not supported on the PaaS target")

    if problems:
        raise ConfigurationError(
            f"Target '{requested.value}' is incompatible with this project: " + "; ".join(problems),
            {"target": requested.value, "problems": problems},
        )

    recommended = select_target(profile)
    warnings: tuple[str, ...] = ()
    if recommended.target != requested:
        warnings = (f"Recommended target is '{recommended.target.value}'",)
    return TargetDecision(target=requested, reason="Selected by user", warnings=warnings)
