"""Red Hat SSO session → authenticated registry client."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rhel_vms import constants
from rhel_vms._logging import get_logger
from rhel_vms.exceptions import AuthenticationError
from rhel_vms.rh_api import SubscriptionManagerClient

if TYPE_CHECKING:
    from rhel_vms.host import AuthenticationProvider
    from rhel_vms.settings import Settings

logger = get_logger(__name__)


async def init_authentication(
    auth_provider: AuthenticationProvider,
    settings: Settings,
) -> SubscriptionManagerClient:
    """Request an SSO session (creating one interactively if needed) and build a client.

    Each call asks the host again, so a user who declined or whose session
    expired gets a new login prompt on the next attempt.

    Raises:
        AuthenticationError: The host returned no session
    """
    session = await auth_provider.get_session(
        constants.AUTHENTICATION_PROVIDER_ID,
        list(constants.AUTHENTICATION_SCOPES),
        create_if_none=True,
    )
    if session is None:
        raise AuthenticationError(
            "unable to connect to Red Hat SSO, please configure the RH authentication",
            {"provider_id": constants.AUTHENTICATION_PROVIDER_ID},
        )

    logger.debug("SSO session obtained", extra={"organization_id": session.organization_id})
    return SubscriptionManagerClient(
        settings.registry_url,
        session.access_token,
        organization_id=session.organization_id,
        timeout=settings.http_timeout_seconds,
    )
