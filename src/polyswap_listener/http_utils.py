from __future__ import annotations

import json
import os
import ssl
from functools import lru_cache
from typing import Any
from urllib.parse import urlencode
from urllib.request import Request, urlopen

import certifi

USER_AGENT = "polyswap-listener/0.1"


@lru_cache(maxsize=1)
def _ssl_context() -> ssl.SSLContext:
    env_cafile = os.getenv("SSL_CERT_FILE")
    if env_cafile:
        return ssl.create_default_context(cafile=env_cafile)
    env_capath = os.getenv("SSL_CERT_DIR")
    if env_capath:
        return ssl.create_default_context(capath=env_capath)
    return ssl.create_default_context(cafile=certifi.where())


def build_url(url: str, params: dict[str, str] | None = None) -> str:
    if not params:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


def get_json(url: str, params: dict[str, str] | None = None, timeout: float = 10.0) -> Any:
    request = Request(build_url(url, params), headers={"User-Agent": USER_AGENT, "Accept": "application/json"})
    with urlopen(request, timeout=timeout, context=_ssl_context()) as response:
        body = response.read().decode("utf-8")
    return json.loads(body)
