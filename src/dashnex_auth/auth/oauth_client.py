"""
OAuth 2.0 Authorization Code client for DashNex, with PKCE for public clients.
Adheres to RFC 6749 (OAuth 2.0) and RFC 7636 (PKCE).

The client keeps no credentials in memory: tokens, the PKCE verifier and the state all
live in the bound token store, so several client instances can share one store.
"""
import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode, urlparse

import aiohttp
import structlog

from .. import __version__
from ..config import Config
from ..exceptions import (
    ConfigurationError,
    DashNexAuthError,
    NotAuthenticatedError,
    RefreshFailedError,
    RequestFailedError,
    StateMismatchError,
    TokenExchangeError,
)
from ..models.account import ActivationResult, ActivationStatus, DashnexUser
from ..models.auth import ClientConfig, OAuthError, TokenRequest, TokenResponse
from .pkce import RandomSource, default_random_source, derive_code_challenge, generate_code_verifier, generate_state
from .token_storage import BaseTokenStorage, maybe_await, supports_pkce

logger = structlog.get_logger(__name__)


@dataclass
class HTTPResponse:
    """The parts of an HTTP response the client acts on, read while the connection was open."""
    status: int
    reason: str
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        if not self.text.strip():
            return None
        return json.loads(self.text)


class DashNexOAuthClient:
    """
    Obtains, persists, refreshes and attaches bearer credentials for the DashNex API.
    """

    def __init__(
        self,
        client_config: ClientConfig,
        token_storage: BaseTokenStorage,
        app_config: Optional[Config] = None,
        session: Optional[aiohttp.ClientSession] = None,
        random_source: RandomSource = default_random_source,
    ):
        """
        Initializes the OAuth client.

        Args:
            client_config: Client id, optional secret, redirect URI and base URL.
            token_storage: Where tokens and PKCE artifacts are kept. Methods may be sync or async.
            app_config: Application configuration, used for HTTP client settings.
            session: An optional shared aiohttp.ClientSession. If None, one will be created.
            random_source: Returns n secure random bytes; used for the state and the code verifier.
        """
        self.client_config = client_config
        self.token_storage = token_storage
        self.app_config = app_config or Config()
        self._session = session
        self._session_owner = session is None # True if this instance creates the session
        self._random_source = random_source
        self._refresh_lock = asyncio.Lock() # Collapses concurrent refreshes into one token call
        self.logger = logger.bind(client_id=client_config.client_id)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            http_cfg = self.app_config.http

            ssl_context = None
            if urlparse(self.client_config.base_url).scheme == "https" and not http_cfg.ssl_verify:
                self.logger.warning("SSL verification is DISABLED for the OAuth client. This is insecure.")
                ssl_context = False

            connector = aiohttp.TCPConnector(
                limit=http_cfg.connection_pool_total_limit,
                limit_per_host=http_cfg.connection_pool_per_host_limit,
                ttl_dns_cache=http_cfg.connection_pool_dns_cache_ttl_seconds,
                ssl=ssl_context
            )
            self._session = aiohttp.ClientSession(connector=connector)
            self._session_owner = True
        return self._session

    async def close_session(self):
        """Closes the aiohttp session if it was created by this instance."""
        if self._session and not self._session.closed and self._session_owner:
            self.logger.debug("Closing owned aiohttp session for OAuth client.")
            await self._session.close()
        self._session = None

    def _timeout(self) -> aiohttp.ClientTimeout:
        http_cfg = self.app_config.http
        return aiohttp.ClientTimeout(
            total=http_cfg.request_timeout_seconds,
            connect=http_cfg.connect_timeout_seconds,
        )

    def _user_agent(self) -> str:
        return f"{self.app_config.http.user_agent}/{__version__}"

    async def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        error_cls: type[DashNexAuthError],
        **kwargs: Any,
    ) -> HTTPResponse:
        """
        Dispatches one HTTP call. Transport failures are raised as error_cls; HTTP error
        statuses are returned to the caller, which decides what they mean.
        """
        session = await self._get_session()
        try:
            async with session.request(method, url, headers=headers, timeout=self._timeout(), **kwargs) as response:
                text = await response.text(errors="replace")
                self.logger.debug("Received HTTP response", method=method, path=urlparse(url).path, status=response.status)
                return HTTPResponse(status=response.status, reason=response.reason or "", text=text)
        except asyncio.TimeoutError as e:
            self.logger.error("HTTP request timed out", method=method, path=urlparse(url).path)
            raise error_cls(f"Request to {url} timed out.") from e
        except aiohttp.ClientError as e:
            self.logger.error("HTTP client error", method=method, path=urlparse(url).path, error_type=type(e).__name__, error_message=str(e))
            raise error_cls(f"HTTP client error calling {url}: {e}") from e

    # --- Authorization -----------------------------------------------------------------

    async def get_authorization_url(self, scope: str = "") -> str:
        """
        Creates the authorization URL to redirect the user to.

        Public clients (no client secret) get a fresh PKCE verifier persisted in the token store
        and the matching S256 challenge in the URL. The state is persisted when the store can hold it.

        Args:
            scope: Space-separated scopes to request.

        Returns:
            The full authorization endpoint URL.

        Raises:
            ConfigurationError: If the client has no secret and the store cannot persist a verifier.
        """
        pkce_capable = supports_pkce(self.token_storage)
        if not self.client_config.is_confidential and not pkce_capable:
            self.logger.error("Public client bound to a token store without PKCE support.")
            raise ConfigurationError(
                "A client without client_secret needs a token store that supports "
                "set_code_verifier/get_code_verifier and set_state/get_state for PKCE."
            )

        state = generate_state(self._random_source)
        params = {
            "client_id": self.client_config.client_id,
            "redirect_uri": self.client_config.redirect_uri,
            "response_type": "code",
            "scope": scope,
            "state": state,
        }

        if not self.client_config.is_confidential:
            code_verifier = generate_code_verifier(self._random_source)
            await maybe_await(self.token_storage.set_code_verifier(code_verifier))
            params["code_challenge"] = derive_code_challenge(code_verifier)
            params["code_challenge_method"] = "S256"

        if pkce_capable:
            await maybe_await(self.token_storage.set_state(state))

        auth_url = f"{self.client_config.authorization_endpoint}?{urlencode(params)}"
        self.logger.info("Authorization URL created", url_host=urlparse(auth_url).hostname, pkce="code_challenge" in params)
        return auth_url

    async def exchange_code_for_token(self, code: str, state: Optional[str] = None) -> None:
        """
        Exchanges an authorization code for an access token and refresh token and stores both.

        Args:
            code: The authorization code received on the redirect URI.
            state: The state received on the redirect URI, if the caller has it. Checked against
                   the persisted state.

        Raises:
            ValueError: If code is empty.
            ConfigurationError: If there is neither a client secret nor a stored code verifier.
            StateMismatchError: If the received or echoed state differs from the persisted one.
            TokenExchangeError: If the token endpoint fails or returns an unusable body.
        """
        if not code:
            raise ValueError("Authorization code must be a non-empty string.")

        pkce_capable = supports_pkce(self.token_storage)
        code_verifier = await maybe_await(self.token_storage.get_code_verifier()) if pkce_capable else None
        if not self.client_config.is_confidential and not code_verifier:
            raise ConfigurationError(
                "No code verifier stored and no client secret configured. "
                "Call get_authorization_url first or configure client_secret."
            )
        expected_state = await maybe_await(self.token_storage.get_state()) if pkce_capable else None

        self.logger.debug("Exchanging authorization code for token.", pkce=code_verifier is not None)
        try:
            if state is not None and expected_state is not None and state != expected_state:
                self.logger.error("OAuth state mismatch on redirect")
                raise StateMismatchError()

            token_request = TokenRequest(
                grant_type="authorization_code",
                code=code,
                redirect_uri=self.client_config.redirect_uri,
                client_id=self.client_config.client_id,
                client_secret=self.client_config.client_secret,
                code_verifier=code_verifier,
            )
            response = await self._send_token_request(token_request, TokenExchangeError)
            if not response.ok:
                self.logger.error("Token exchange failed", status=response.status, response_body=response.text[:500])
                raise TokenExchangeError(
                    f"Token exchange failed: {response.reason}",
                    status=response.status,
                    status_text=response.reason,
                    server_error=self._parse_oauth_error(response),
                )

            token = self._parse_token_response(response, TokenExchangeError)
            if token.state is not None and expected_state is not None and token.state != expected_state:
                self.logger.error("OAuth state mismatch in token response")
                raise StateMismatchError()

            await maybe_await(self.token_storage.set_tokens(token.access_token, token.refresh_token))
            self.logger.info("Authorization code exchanged, tokens stored.")
        finally:
            if pkce_capable:
                # A verifier and state are single use, whatever the outcome.
                await asyncio.gather(
                    maybe_await(self.token_storage.set_code_verifier(None)),
                    maybe_await(self.token_storage.set_state(None)),
                )

    async def _send_token_request(self, token_request: TokenRequest, error_cls: type[DashNexAuthError]) -> HTTPResponse:
        payload = token_request.model_dump(exclude_none=True)
        headers = {"Accept": "application/json", "User-Agent": self._user_agent()}
        endpoint = self.client_config.token_endpoint
        self.logger.info("Requesting token from endpoint", grant_type=token_request.grant_type, token_url_host=urlparse(endpoint).hostname)

        if self.app_config.http.token_request_method == "GET":
            self.logger.warning("Sending token request as GET with a query string; credentials may end up in server logs.")
            return await self._send("GET", endpoint, headers, error_cls, params=payload)

        headers["Content-Type"] = "application/x-www-form-urlencoded"
        return await self._send("POST", endpoint, headers, error_cls, data=payload)

    def _parse_token_response(self, response: HTTPResponse, error_cls: type[DashNexAuthError]) -> TokenResponse:
        try:
            return TokenResponse.model_validate(response.json())
        except ValueError as e: # JSONDecodeError and pydantic ValidationError
            self.logger.error("Failed to validate token response", error=str(e))
            raise error_cls(f"Invalid token data received: {e}", status=response.status, status_text=response.reason) from e

    def _parse_oauth_error(self, response: HTTPResponse) -> Optional[OAuthError]:
        try:
            return OAuthError.model_validate(response.json())
        except ValueError:
            return None

    # --- Session state -----------------------------------------------------------------

    async def is_authenticated(self) -> bool:
        """True if the store currently holds an access token."""
        return bool(await maybe_await(self.token_storage.get_access_token()))

    async def logout(self) -> None:
        """Forgets all tokens and PKCE artifacts. No network call; safe to call repeatedly."""
        await maybe_await(self.token_storage.clear_tokens())
        if supports_pkce(self.token_storage):
            await asyncio.gather(
                maybe_await(self.token_storage.set_code_verifier(None)),
                maybe_await(self.token_storage.set_state(None)),
            )
        self.logger.info("Logged out, tokens cleared.")

    async def _refresh_access_token(self, rejected_token: Optional[str] = None) -> None:
        """
        Exchanges the stored refresh token for a new token pair.

        Args:
            rejected_token: The access token the server just rejected. If the stored token has
                            already changed, another request refreshed it and no call is made.

        Raises:
            RefreshFailedError: If no refresh token is stored (tokens kept), or the server rejects
                                the refresh (tokens cleared, re-authentication required).
        """
        async with self._refresh_lock:
            if rejected_token is not None:
                current_token = await maybe_await(self.token_storage.get_access_token())
                if current_token and current_token != rejected_token:
                    self.logger.debug("Access token was refreshed by a concurrent request.")
                    return

            refresh_token = await maybe_await(self.token_storage.get_refresh_token())
            if not refresh_token:
                self.logger.error("Refresh token is missing.")
                raise RefreshFailedError("No refresh token available")

            token_request = TokenRequest(
                grant_type="refresh_token",
                refresh_token=refresh_token,
                client_id=self.client_config.client_id,
                client_secret=self.client_config.client_secret,
            )
            response = await self._send_token_request(token_request, RefreshFailedError)
            if not response.ok:
                self.logger.warning("Token refresh rejected, clearing stored tokens.", status=response.status)
                await maybe_await(self.token_storage.clear_tokens())
                raise RefreshFailedError(
                    "Token refresh failed",
                    status=response.status,
                    status_text=response.reason,
                    server_error=self._parse_oauth_error(response),
                    requires_reauth=True,
                )

            try:
                token = self._parse_token_response(response, RefreshFailedError)
            except RefreshFailedError as e:
                await maybe_await(self.token_storage.clear_tokens())
                e.requires_reauth = True
                raise

            if not token.refresh_token:
                self.logger.debug("Refresh token not returned in response, reusing existing one.")
            await maybe_await(self.token_storage.set_tokens(token.access_token, token.refresh_token or refresh_token))
            self.logger.info("Access token refreshed.")

    # --- Authenticated requests --------------------------------------------------------

    def _api_headers(self, access_token: str, headers: Optional[Dict[str, str]]) -> Dict[str, str]:
        merged = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": self._user_agent(),
        }
        for name, value in (headers or {}).items():
            if name.lower() == "authorization":
                continue # The bearer header is always ours
            for existing in [key for key in merged if key.lower() == name.lower()]:
                del merged[existing]
            merged[name] = value
        merged["Authorization"] = f"Bearer {access_token}"
        return merged

    async def _send_api_request(
        self,
        method: str,
        path: str,
        access_token: str,
        body: Any,
        headers: Optional[Dict[str, str]],
    ) -> HTTPResponse:
        kwargs: Dict[str, Any] = {}
        if body is not None:
            kwargs["data"] = json.dumps(body)
        return await self._send(
            method,
            f"{self.client_config.base_url}{path}",
            self._api_headers(access_token, headers),
            RequestFailedError,
            **kwargs,
        )

    async def request(
        self,
        path: str,
        method: str = "GET",
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """
        Calls the DashNex API with the stored bearer token.

        On a 401, and only if a refresh token is stored, the token is refreshed once and the
        call is retried once with the access token read back from the store.

        Args:
            path: Path under the base URL, e.g. "/api/oauth/v2/user".
            method: HTTP method.
            body: JSON-serializable request body, or None.
            headers: Extra headers. They cannot replace the Authorization header.

        Returns:
            The parsed JSON response body, or None for an empty body.

        Raises:
            NotAuthenticatedError: If no access token is stored. No HTTP call is made.
            RefreshFailedError: If the refresh after a 401 fails.
            RequestFailedError: For any other non-success status (including a 401 on the retry)
                                or a transport failure.
        """
        method = method.upper()
        access_token = await maybe_await(self.token_storage.get_access_token())
        if not access_token:
            raise NotAuthenticatedError()

        response = await self._send_api_request(method, path, access_token, body, headers)

        if response.status == 401 and await maybe_await(self.token_storage.get_refresh_token()):
            self.logger.info("Access token rejected, refreshing and retrying once.", path=path)
            await self._refresh_access_token(rejected_token=access_token)
            access_token = await maybe_await(self.token_storage.get_access_token())
            if not access_token:
                raise NotAuthenticatedError()
            response = await self._send_api_request(method, path, access_token, body, headers)

        if not response.ok:
            self.logger.warning("API request failed", method=method, path=path, status=response.status)
            raise RequestFailedError(
                f"Request failed: {response.reason}",
                status=response.status,
                status_text=response.reason,
            )

        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise RequestFailedError(
                f"Invalid JSON in response to {method} {path}: {e}",
                status=response.status,
                status_text=response.reason,
            ) from e

    # --- DashNex account API -----------------------------------------------------------

    async def get_current_user(self) -> DashnexUser:
        """Returns the profile and licenses of the signed-in user."""
        data = await self.request("/api/oauth/v2/user")
        return DashnexUser.model_validate(data)

    async def get_activation_status(self, product_code: str) -> ActivationStatus:
        data = await self.request(f"/api/oauth/v2/activations/{product_code}/status")
        return ActivationStatus.model_validate(data)

    async def activate_domain(self, product_code: str, domain: str) -> ActivationResult:
        """Activates a product license on a domain."""
        data = await self.request(
            f"/api/oauth/v2/activations/{product_code}/activate",
            method="POST",
            body={"domain": domain},
        )
        return ActivationResult.model_validate(data)

    async def revoke_activation(self, activation_id: int) -> None:
        await self.request(f"/api/oauth/v2/activations/{activation_id}/revoke", method="DELETE")

    async def revoke_activation_by_domain(self, product_code: str, domain: str) -> ActivationResult:
        data = await self.request(
            f"/api/oauth/v2/activations/{product_code}/domain/revoke",
            method="DELETE",
            body={"domain": domain},
        )
        return ActivationResult.model_validate(data)

    async def __aenter__(self):
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close_session()
