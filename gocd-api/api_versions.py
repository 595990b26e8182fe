import re
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Header, Request
from fastapi.responses import JSONResponse

from config import SETTINGS
from policy import PolicyError


UNRESOLVED_MESSAGE = "The url you are trying to reach appears to be incorrect."
_VND_PATTERN = re.compile(r"application/vnd\.go\.cd\.v(\d+)\+json", re.IGNORECASE)


@dataclass(frozen=True)
class ApiVersion:
    number: int
    deprecated_in: Optional[str] = None
    removal_in: Optional[str] = None
    successor: Optional[int] = None
    api_name: str = ""

    @property
    def media_type(self) -> str:
        return f"application/vnd.go.cd.v{self.number}+json"

    @property
    def is_deprecated(self) -> bool:
        return self.deprecated_in is not None


def requested_versions(accept: Optional[str]) -> list[int]:
    if not accept:
        return []
    return [int(match) for match in _VND_PATTERN.findall(accept)]


def negotiate(accept: Optional[str], supported: dict[int, ApiVersion]) -> ApiVersion:
    for number in requested_versions(accept):
        if number in supported:
            return supported[number]
    raise PolicyError(404, "UNRESOLVED_URL", UNRESOLVED_MESSAGE)


def accepts(*versions: ApiVersion) -> Callable:
    """FastAPI dependency resolving the API version requested through Accept.

    Routes are only reachable with an ``Accept: application/vnd.go.cd.vN+json``
    header naming one of ``versions``; any other request is treated as an
    unknown url.
    """
    supported = {version.number: version for version in versions}

    def resolve(accept: Optional[str] = Header(None)) -> ApiVersion:
        return negotiate(accept, supported)

    return resolve


def deprecation_headers(version: ApiVersion, request: Request) -> dict:
    if not version.is_deprecated:
        return {}
    changelog = f"{SETTINGS.api_docs_url.rstrip('/')}/{version.deprecated_in}/#api-changelog"
    headers = {
        "X-GoCD-API-Deprecated-In": f"v{version.deprecated_in}",
        "X-GoCD-API-Removal-In": f"v{version.removal_in}",
        "X-GoCD-API-Deprecation-Info": changelog,
        "Warning": (
            f'299 GoCD/v{SETTINGS.server_version} "The {version.api_name} API version v{version.number} has been '
            f"deprecated in GoCD Release v{version.deprecated_in}. This version will be removed in GoCD Release "
            f"v{version.removal_in}. Version v{version.successor} of the API is available, and users are "
            'encouraged to use it"'
        ),
    }
    if version.successor is not None:
        headers["Link"] = (
            f'<{request.url}>; Accept="application/vnd.go.cd.v{version.successor}+json"; rel="successor-version"'
        )
    return headers


def render(
    payload,
    version: ApiVersion,
    request: Request,
    status_code: int = 200,
    etag: Optional[str] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    response_headers = deprecation_headers(version, request)
    if etag:
        response_headers["ETag"] = etag
    if headers:
        response_headers.update(headers)
    return JSONResponse(
        status_code=status_code,
        content=payload,
        media_type=f"{version.media_type}; charset=utf-8",
        headers=response_headers,
    )


def render_message(message: str, version: ApiVersion, request: Request, status_code: int = 200) -> JSONResponse:
    return render({"message": message}, version, request, status_code=status_code)


async def json_body(request: Request):
    """Parse the request body, answering 400 for anything that is not JSON."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        return await request.json()
    except ValueError as exc:
        raise PolicyError(400, "BAD_REQUEST", "Error parsing the request body as JSON.") from exc
