"""
Outbound HTTP: one request in, one normalised ``HttpResponse`` out.

Redirects are followed by hand so the method *and* body survive every hop
(curl's POSTREDIR behaviour, or a 308 everywhere). The 5 s budget covers the
whole chain, not a single hop.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping
from urllib.parse import unquote_plus, urljoin

import requests

log = logging.getLogger(__name__)

MAX_REDIRECTS = 5
TIMEOUT = 5.0  # seconds, whole request incl. redirects
REDIRECT_CODES = {301, 302, 303, 307, 308}
CHUNK_SIZE = 8192


class HTTPMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    HEAD = "HEAD"
    PATCH = "PATCH"
    DELETE = "DELETE"
    OPTIONS = "OPTIONS"


class ContentType(str, Enum):
    JSON = "application/json"
    FORM_DATA = "application/x-www-form-urlencoded"
    MULTIPART = "multipart/form-data"


class HTTPStatus(Enum):
    # Success
    OK = (200, "OK")
    CREATED = (201, "Created")
    NO_CONTENT = (204, "No Content")
    # Misc
    REDIRECT = (301, "Redirect")
    METHOD_NOT_ALLOWED = (405, "Method Not Allowed")
    NOT_FOUND = (404, "not_found")
    # Micropub errors
    FORBIDDEN = (403, "forbidden")
    UNAUTHORIZED = (401, "unauthorized")
    INSUFFICIENT_SCOPE = (401, "insufficient_scope")
    INVALID_REQUEST = (400, "invalid_request")
    SERVER_ERROR = (500, "server_error")

    @property
    def code(self) -> int:
        return self.value[0]

    @property
    def description(self) -> str:
        return self.value[1]


class HTTPClientError(Exception):
    pass


class InvalidRequest(HTTPClientError):
    """The call was malformed before anything went on the wire."""


class TransportError(HTTPClientError):
    pass


class RequestTimeout(TransportError):
    pass


@dataclass
class HttpResponse:
    body: Any
    headers: dict[str, str] = field(default_factory=dict)
    status_code: int = 0

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


################################################################################
# Parsing helpers
################################################################################
def split_header_line(line: str) -> tuple[str, str]:
    name, _, value = line.partition(":")
    return name.strip().lower(), value.strip()


def fold_header_lines(lines: Iterable[str]) -> dict[str, str]:
    """
    Fold raw ``Name: value`` lines into a dict. Names are lower-cased, lines
    without a value (status line, blank separator) are skipped and a repeated
    header keeps its *last* value.
    """
    headers: dict[str, str] = {}
    for line in lines:
        name, value = split_header_line(line)
        if name and value:
            headers[name] = value
    return headers


def formdata_decode(text: str) -> dict[str, str | None]:
    """``a=1&b=&c`` → ``{"a": "1", "b": "", "c": None}``"""
    out: dict[str, str | None] = {}
    for chunk in (text or "").split("&"):
        if not chunk:
            continue
        key, sep, value = chunk.partition("=")
        out[unquote_plus(key)] = unquote_plus(value) if sep else None
    return out


def media_type(content_type: str | None) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def decode_body(content_type: str | None, text: str):
    kind = media_type(content_type)
    if kind == ContentType.JSON.value:
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            log.warning("Undecodable JSON body: %s", exc)
            return None
    if kind == ContentType.FORM_DATA.value:
        return formdata_decode(text)
    return text


def _request_headers(headers) -> dict[str, str]:
    if not headers:
        return {}
    if isinstance(headers, Mapping):
        return {str(k): str(v) for k, v in headers.items()}
    out = {}
    for line in headers:
        name, _, value = str(line).partition(":")
        if name.strip():
            out[name.strip()] = value.strip()
    return out


def _raw_header_lines(resp) -> Iterable[str]:
    # urllib3 keeps repeated headers apart; requests' own dict merges them
    for name, value in resp.raw.headers.iteritems():
        yield f"{name}: {value}"


def _read_body(resp, deadline: float, what: str) -> str:
    # requests' timeout= only caps the gap between two reads
    raw = b""
    for chunk in resp.iter_content(CHUNK_SIZE):
        raw += chunk
        if time.monotonic() > deadline:
            raise RequestTimeout(f"{what} body not received in time")
    return raw.decode(resp.encoding or "utf-8", errors="replace")


################################################################################
# Request
################################################################################
def request(
    url: str | None,
    method: HTTPMethod | str = HTTPMethod.GET,
    body: Mapping[str, Any] | None = None,
    headers: Mapping[str, str] | Iterable[str] | None = None,
    *,
    timeout: float = TIMEOUT,
    max_redirects: int = MAX_REDIRECTS,
) -> HttpResponse:
    if not url:
        raise InvalidRequest("Provide URL")
    try:
        method = HTTPMethod(str(getattr(method, "value", method)).upper())
    except ValueError:
        raise InvalidRequest(f"Unsupported method {method!r}") from None
    if method is HTTPMethod.GET and body is not None:
        raise InvalidRequest("Cannot send body in GET request")

    send_headers = _request_headers(headers)
    deadline = time.monotonic() + timeout
    hops = 0

    with requests.Session() as session:
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RequestTimeout(f"{method.value} {url} exceeded {timeout:g}s")
            try:
                resp = session.request(
                    method.value,
                    url,
                    data=body,
                    headers=send_headers,
                    timeout=remaining,
                    allow_redirects=False,
                    stream=True,
                )
            except requests.Timeout as exc:
                raise RequestTimeout(str(exc)) from exc
            except requests.RequestException as exc:
                raise TransportError(str(exc)) from exc

            location = resp.headers.get("Location")
            if resp.status_code in REDIRECT_CODES and location:
                hops += 1
                if hops > max_redirects:
                    resp.close()
                    raise TransportError(
                        f"Maximum ({max_redirects}) redirects followed"
                    )
                url = urljoin(url, location)
                log.debug("Following %s redirect to %s", resp.status_code, url)
                resp.close()
                continue

            try:
                if method is HTTPMethod.HEAD:
                    text = ""
                else:
                    text = _read_body(resp, deadline, f"{method.value} {url}")
                header_map = fold_header_lines(_raw_header_lines(resp))
            except requests.Timeout as exc:
                raise RequestTimeout(str(exc)) from exc
            except requests.RequestException as exc:
                raise TransportError(str(exc)) from exc
            finally:
                resp.close()

            content_type = header_map.get("content-type")
            return HttpResponse(
                body=None if method is HTTPMethod.HEAD else decode_body(content_type, text),
                headers=header_map,
                status_code=resp.status_code,
            )
