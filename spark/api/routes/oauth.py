"""
OAuth connect flow.

`GET /integrations/{service}/oauth` creates a credential group and redirects
to the provider; the callback exchanges the code and lands the browser back
on `/integrations` with `status=connected` or `status=error`.
"""

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from spark.integrations.models import IntegrationGroup
from spark.jobs.base import JobRuntime
from spark.jobs.initialize import InitializeJob
from spark.jobs.runtime import get_runtime
from spark.kernel.errors import NotFoundError, SparkError
from spark.kernel.ids import random_secret
from spark.plugins.contracts import ProviderPlugin

logger = structlog.get_logger()

router = APIRouter(tags=["OAuth"])

SESSION_COOKIE = "spark_session"
SESSION_MAX_AGE_SECONDS = 3600


def _oauth_plugin(runtime: JobRuntime, service: str) -> ProviderPlugin:
    plugin = runtime.plugins.get(service)
    if not plugin.is_oauth:
        raise NotFoundError(message=f"{service} does not use OAuth", code="oauth.unsupported")
    return plugin


def _back_to_integrations(status: str) -> RedirectResponse:
    return RedirectResponse(url=f"/integrations?status={status}", status_code=302)


async def _provision_instance(runtime: JobRuntime, plugin: ProviderPlugin, group: IntegrationGroup) -> None:
    """First successful connect of a group gets one instance and an Initialize job."""
    if await runtime.integrations.list_for_group(group.id):
        return
    integration = await plugin.ensure_primary_instance(runtime.integrations, group)
    if integration is None:
        if plugin.requires_configuration():
            logger.info("Group connected, instance awaits configuration", service=plugin.identifier, group_id=group.id)
            return
        integration = await plugin.create_instance(runtime.integrations, group)
    await runtime.queue.enqueue(InitializeJob.for_integration(integration))


@router.get("/integrations/{service}/oauth")
async def start_oauth(service: str, request: Request, runtime: JobRuntime = Depends(get_runtime)):
    plugin = _oauth_plugin(runtime, service)
    session_id = request.cookies.get(SESSION_COOKIE) or random_secret(40)

    group = await plugin.initialize_group(runtime.integrations, user_id=runtime.settings.owner_user_id)
    url = await runtime.credentials.get_oauth_url(plugin, group, session_id=session_id)

    response = RedirectResponse(url=url, status_code=302)
    response.set_cookie(
        SESSION_COOKIE,
        session_id,
        max_age=SESSION_MAX_AGE_SECONDS,
        httponly=True,
        samesite="lax",
    )
    return response


@router.get("/integrations/{service}/oauth/callback")
async def oauth_callback(
    service: str,
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    runtime: JobRuntime = Depends(get_runtime),
):
    plugin = _oauth_plugin(runtime, service)
    session_id = request.cookies.get(SESSION_COOKIE)

    if error or not code or not state or not session_id:
        logger.warning(
            "OAuth callback incomplete",
            service=service,
            provider_error=error,
            has_code=bool(code),
            has_state=bool(state),
            has_session=bool(session_id),
        )
        return _back_to_integrations("error")

    group_id = await runtime.credentials.pending_group_id(session_id, service)
    if not group_id:
        logger.warning("OAuth callback without a pending group", service=service)
        return _back_to_integrations("error")

    try:
        group = await runtime.credentials.handle_oauth_callback(
            plugin,
            group_id=group_id,
            session_id=session_id,
            code=code,
            state=state,
        )
        await _provision_instance(runtime, plugin, group)
    except SparkError as exc:
        logger.warning("OAuth callback failed", service=service, group_id=group_id, code=exc.code, error=exc.message)
        return _back_to_integrations("error")

    return _back_to_integrations("connected")
