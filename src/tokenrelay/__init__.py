"""tokenrelay -- transparent access-token refresh for HTTP clients and servers.

Calls to a token-protected API are sent with the stored access token.  When
the server reports that the token expired, tokenrelay exchanges the refresh
token for new credentials, stores them and replays the original request
once.  Concurrent callers that hit the same expiry share a single refresh.

Typical usage::

    from tokenrelay.client import TokenRelayClient
    from tokenrelay.credentials import MemoryCredentialStore

    store = MemoryCredentialStore({"accessToken": "a1", "refreshToken": "r1"})
    async with TokenRelayClient(store, refresh_url=REFRESH_URL) as client:
        result = await client.fetch_with_refresh_retry(API_URL + "/api/data")

Modules:
    client: The refresh-and-retry orchestrator (public surface).
    middleware: Inbound middleware that refreshes token cookies.
    coordinator: Single-flight deduplication of refresh attempts.
    refresh: Refresh executor and token extraction.
    retry: Retry executor.
    classifier: Response classification (ok / needs refresh / failure).
    transport: httpx-based HTTP transport.
    credentials: Credential stores (memory, file, cookie jar).
    models: Pydantic models shared across the package.
    config: XDG-aware configuration and precedence resolution.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes of the CLI.
    output: stdout/stderr formatting for the CLI.
    app: Typer application and CLI entry point.
"""

__version__ = "0.1.0"
