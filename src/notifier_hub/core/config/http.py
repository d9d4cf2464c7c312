"""HTTP client configuration and factory."""

from dataclasses import dataclass

import httpx

from notifier_hub import __version__

DEFAULT_USER_AGENT = f"notifier-hub/{__version__}"


@dataclass(frozen=True, slots=True)
class HttpxClientOptions:
    """Options for configuring an httpx.AsyncClient."""

    # Long polls hold the request open for up to 30 seconds
    timeout: float = 40.0
    connect_timeout: float = 10.0
    max_connections: int = 10
    max_keepalive: int = 5
    headers: dict[str, str] | None = None
    transport: httpx.AsyncBaseTransport | None = None


def get_or_create_httpx_client(
    client_holder: list[httpx.AsyncClient | None],
    *,
    options: HttpxClientOptions | None = None,
) -> httpx.AsyncClient:
    """Get or create a shared httpx.AsyncClient with lazy initialization.

    Args:
        client_holder: A mutable list containing the client instance (or empty).
            Used as a container so the owner can close and recreate the client.
        options: Optional configuration overrides for the httpx client.

    Returns:
        httpx.AsyncClient instance.

    """
    if (
        client_holder
        and client_holder[0] is not None
        and not client_holder[0].is_closed
    ):
        return client_holder[0]

    effective_options = options or HttpxClientOptions()
    final_headers = {
        "User-Agent": DEFAULT_USER_AGENT,
        **(effective_options.headers or {}),
    }

    client = httpx.AsyncClient(
        timeout=httpx.Timeout(
            effective_options.timeout,
            connect=effective_options.connect_timeout,
        ),
        limits=httpx.Limits(
            max_connections=effective_options.max_connections,
            max_keepalive_connections=effective_options.max_keepalive,
        ),
        headers=final_headers,
        transport=effective_options.transport,
    )

    if len(client_holder) == 0:
        client_holder.append(client)
    else:
        client_holder[0] = client

    return client
