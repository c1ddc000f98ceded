"""HTTP client for the Backblaze B2 native API."""

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import quote

import httpx

from notevault.exceptions import StorageAuthorizationError, StorageBackendError

logger = logging.getLogger(__name__)

API_VERSION = "b2api/v2"
AUTO_CONTENT_TYPE = "b2/x-auto"


class B2APIError(StorageBackendError):
    """Error response returned by the B2 API."""

    def __init__(self, status: int, code: str, message: str):
        self.status = status
        self.code = code
        super().__init__(f"B2 API error {status} {code}: {message}")


class B2AuthError(B2APIError):
    """The account or upload token was rejected (HTTP 401)."""
    pass


class B2NotFoundError(B2APIError):
    """The requested file or bucket does not exist (HTTP 404)."""
    pass


@dataclass
class B2Download:
    """Streamed download response."""

    headers: httpx.Headers
    stream: AsyncIterator[bytes]


class B2Client:
    """Thin async wrapper over the B2 native API.

    Every call returns the decoded JSON body. ``authorize()`` must succeed
    before any account-level call; upload calls use the URL and token
    handed out by ``get_upload_url`` / ``get_upload_part_url``.
    """

    def __init__(
        self,
        application_key_id: str,
        application_key: str,
        api_url: str = "https://api.backblazeb2.com",
        timeout: float = 300,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize B2 client.

        Args:
            application_key_id: B2 application key id
            application_key: B2 application key
            api_url: Base URL used for b2_authorize_account
            timeout: Request timeout in seconds
            http_client: Optional preconfigured httpx client (used by tests)
        """
        self._application_key_id = application_key_id
        self._application_key = application_key
        self._auth_url = api_url.rstrip("/")
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self.account_id: Optional[str] = None
        self.account_token: Optional[str] = None
        self.api_url: Optional[str] = None
        self.download_url: Optional[str] = None

    async def aclose(self) -> None:
        await self._http.aclose()

    async def authorize(self) -> Dict[str, Any]:
        """Exchange the application key for an account token."""
        response = await self._http.get(
            f"{self._auth_url}/{API_VERSION}/b2_authorize_account",
            auth=(self._application_key_id, self._application_key),
        )
        data = self._json_or_raise(response)

        self.account_id = data["accountId"]
        self.account_token = data["authorizationToken"]
        self.api_url = data["apiUrl"]
        self.download_url = data["downloadUrl"]

        logger.info(
            "Authorized with B2",
            extra={"account_id": self.account_id, "api_url": self.api_url},
        )
        return data

    async def start_large_file(
        self, bucket_id: str, file_name: str, content_type: str = AUTO_CONTENT_TYPE
    ) -> Dict[str, Any]:
        return await self._call_api(
            "b2_start_large_file",
            {"bucketId": bucket_id, "fileName": file_name, "contentType": content_type},
        )

    async def get_upload_url(self, bucket_id: str) -> Dict[str, Any]:
        return await self._call_api("b2_get_upload_url", {"bucketId": bucket_id})

    async def get_upload_part_url(self, file_id: str) -> Dict[str, Any]:
        return await self._call_api("b2_get_upload_part_url", {"fileId": file_id})

    async def upload_part(
        self, upload_url: str, auth_token: str, part_number: int, data: bytes
    ) -> Dict[str, Any]:
        """Upload one part of a large file."""
        response = await self._http.post(
            upload_url,
            content=data,
            headers={
                "Authorization": auth_token,
                "X-Bz-Part-Number": str(part_number),
                "Content-Length": str(len(data)),
                "X-Bz-Content-Sha1": hashlib.sha1(data).hexdigest(),
            },
        )
        return self._json_or_raise(response)

    async def upload_file(
        self,
        upload_url: str,
        auth_token: str,
        file_name: str,
        data: bytes,
        content_type: str = AUTO_CONTENT_TYPE,
    ) -> Dict[str, Any]:
        """Upload a whole file in one request."""
        response = await self._http.post(
            upload_url,
            content=data,
            headers={
                "Authorization": auth_token,
                "X-Bz-File-Name": quote(file_name, safe="/"),
                "Content-Type": content_type,
                "Content-Length": str(len(data)),
                "X-Bz-Content-Sha1": hashlib.sha1(data).hexdigest(),
            },
        )
        return self._json_or_raise(response)

    async def finish_large_file(self, file_id: str, part_sha1_array: List[str]) -> Dict[str, Any]:
        return await self._call_api(
            "b2_finish_large_file", {"fileId": file_id, "partSha1Array": part_sha1_array}
        )

    async def cancel_large_file(self, file_id: str) -> Dict[str, Any]:
        return await self._call_api("b2_cancel_large_file", {"fileId": file_id})

    async def list_file_names(
        self,
        bucket_id: str,
        prefix: str = "",
        start_file_name: Optional[str] = None,
        max_file_count: int = 1,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "bucketId": bucket_id,
            "prefix": prefix,
            "maxFileCount": max_file_count,
        }
        if start_file_name is not None:
            payload["startFileName"] = start_file_name
        return await self._call_api("b2_list_file_names", payload)

    async def delete_file_version(self, file_id: str, file_name: str) -> Dict[str, Any]:
        return await self._call_api(
            "b2_delete_file_version", {"fileId": file_id, "fileName": file_name}
        )

    async def download_file_by_name(self, bucket_name: str, file_name: str) -> B2Download:
        """Start a streamed download.

        Headers are available immediately; the body is only read as the
        returned stream is consumed, and the response is closed when the
        stream is exhausted or closed.
        """
        self._require_authorization()
        request = self._http.build_request(
            "GET",
            f"{self.download_url}/file/{bucket_name}/{quote(file_name, safe='/')}",
            headers={"Authorization": self.account_token},
        )
        response = await self._http.send(request, stream=True)
        if response.status_code >= 400:
            await response.aread()
            await response.aclose()
            self._raise_for_status(response)

        return B2Download(headers=response.headers, stream=self._iter_body(response))

    @staticmethod
    async def _iter_body(response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        finally:
            await response.aclose()

    def _require_authorization(self) -> None:
        if self.account_token is None or self.api_url is None:
            raise StorageAuthorizationError("B2 client is not authorized")

    async def _call_api(self, operation: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._require_authorization()
        response = await self._http.post(
            f"{self.api_url}/{API_VERSION}/{operation}",
            json=payload,
            headers={"Authorization": self.account_token},
        )
        return self._json_or_raise(response)

    def _json_or_raise(self, response: httpx.Response) -> Dict[str, Any]:
        self._raise_for_status(response)
        return response.json()

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code < 400:
            return

        code = "unknown"
        message = response.reason_phrase
        try:
            body = response.json()
            code = body.get("code", code)
            message = body.get("message", message)
        except ValueError:
            pass

        if response.status_code == 401:
            raise B2AuthError(response.status_code, code, message)
        if response.status_code == 404:
            raise B2NotFoundError(response.status_code, code, message)
        raise B2APIError(response.status_code, code, message)
