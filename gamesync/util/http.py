"""HTTP utilities"""
import json
import threading
import urllib.parse
from typing import Dict, Mapping, Optional, Sequence

import requests
from requests.adapters import HTTPAdapter

from gamesync import settings
from gamesync.util.log import logger

DEFAULT_TIMEOUT = settings.DEFAULT_HTTP_TIMEOUT

_session_lock = threading.Lock()
_session: Optional[requests.Session] = None


class HTTPError(Exception):
    """Exception raised on request failures"""

    def __init__(self, message, code=None):
        super().__init__(message)
        self.code = code


class UnauthorizedAccessError(HTTPError):
    """Exception raised for 401 HTTP errors"""


def get_session() -> requests.Session:
    """Return the process wide session; its connection pool bounds how many
    transfers can run at the same time."""
    global _session
    with _session_lock:
        if _session is None:
            _session = requests.Session()
            pool_size = max(settings.SYNC_MAX_WORKERS, 1)
            adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
            _session.mount("https://", adapter)
            _session.mount("http://", adapter)
        return _session


class Request:
    def __init__(
        self,
        url: str,
        timeout: float = DEFAULT_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
        redacted_query_parameters: Sequence[str] = (),
    ) -> None:
        self.url = self._clean_url(url)
        self.timeout = timeout
        self.session = session
        self.redacted_query_parameters = redacted_query_parameters
        self.status_code: Optional[int] = None
        self.content = b""
        self.response_headers: Mapping[str, str] = {}
        self.headers = {"User-Agent": settings.DEFAULT_USER_AGENT}
        if headers is None:
            headers = {}
        if not isinstance(headers, dict):
            raise TypeError("HTTP headers needs to be a dict ({})".format(headers))
        self.headers.update(headers)

    @staticmethod
    def _clean_url(url):
        """Checks that a given URL is valid and return a usable version"""
        if not url:
            raise ValueError("An URL is required!")
        if url.startswith("//"):
            url = "https:" + url
        return url.replace(" ", "%20")

    @property
    def loggable_url(self) -> str:
        """The URL with secrets in its query string masked"""
        if not self.redacted_query_parameters:
            return self.url
        parsed = urllib.parse.urlsplit(self.url)
        query = [
            (key, "[REDACTED]" if key in self.redacted_query_parameters else value)
            for key, value in urllib.parse.parse_qsl(parsed.query)
        ]
        return urllib.parse.urlunsplit(parsed._replace(query=urllib.parse.urlencode(query)))

    def _request(self, method, data=None, json_data=None):
        logger.debug("%s %s", method, self.loggable_url)
        session = self.session or get_session()
        try:
            response = session.request(
                method,
                self.url,
                data=data,
                json=json_data,
                headers=self.headers,
                timeout=self.timeout,
            )
        except requests.RequestException as error:
            raise HTTPError("Unable to connect to server %s: %s" % (self.loggable_url, error)) from error

        self.status_code = response.status_code
        self.response_headers = response.headers
        if response.status_code == 401:
            raise UnauthorizedAccessError("Access to %s denied" % self.loggable_url, code=401)
        if response.status_code > 299:
            raise HTTPError(
                "%s %s returned %s" % (method, self.loggable_url, response.status_code),
                code=response.status_code,
            )
        self.content = response.content
        return self

    def get(self):
        return self._request("GET")

    def put(self, data: bytes):
        return self._request("PUT", data=data)

    def post(self, data=None, json_data=None):
        return self._request("POST", data=data, json_data=json_data)

    @property
    def json(self):
        _raw_json = self.text
        if _raw_json:
            try:
                return json.loads(_raw_json)
            except json.decoder.JSONDecodeError as err:
                raise ValueError(f"JSON response from {self.loggable_url} could not be decoded: '{_raw_json[:80]}'") from err
        return {}

    @property
    def text(self):
        if self.content:
            return self.content.decode()
        return ""
