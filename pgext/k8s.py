"""Thin async wrapper around the K8s REST API.

Every function returns a tuple whose last element is an error flag instead of
raising. Callers that prefer exceptions, most notably `pgext.store`, convert
the tuples themselves.

Network errors are retried with an exponential back-off. HTTP error codes are
not retried because they are valid K8s responses.

"""

import asyncio
import json
import logging
import ssl
from typing import Dict, List, Tuple
from urllib.parse import urlparse

import httpx
import tenacity as tc
from square.dtypes import K8sConfig

# Network problems worth another attempt.
WEB_EXCEPTIONS = (httpx.RequestError, ssl.SSLError, KeyError, asyncio.TimeoutError)

# Give up after five minutes or eight attempts, whichever comes first.
RETRY_STOP = tc.stop_after_delay(300) | tc.stop_after_attempt(8)
RETRY_WAIT = tc.wait_exponential(multiplier=1, min=0, max=20) + tc.wait_random(-5, 5)

# JSON patches are the only kind of PATCH request we send.
JSON_PATCH = {"Content-Type": "application/json-patch+json"}

# Convenience.
logit = logging.getLogger("app")


def _log_retry(retry_state: tc.RetryCallState):
    """Log a warning before each new attempt."""
    k8scfg, method, url = retry_state.args[:3]
    logit.warning(
        "backing off",
        {
            "component": "k8s",
            "attempt": retry_state.attempt_number,
            "cluster": k8scfg.name,
            "method": method,
            "path": urlparse(url).path,
        },
    )


async def _sleep(delay: float):
    """Exists only so that tests can mock out the back-off delays."""
    await asyncio.sleep(delay)


@tc.retry(
    stop=RETRY_STOP,
    wait=RETRY_WAIT,
    retry=tc.retry_if_exception_type(WEB_EXCEPTIONS),
    before_sleep=_log_retry,
    reraise=True,
    sleep=_sleep,
)
async def _call(
    k8scfg: K8sConfig,
    method: str,
    url: str,
    payload: dict | list | None,
    headers: dict | None,
) -> httpx.Response:
    return await k8scfg.client.request(method, url, json=payload, headers=headers)


async def request(
    k8scfg: K8sConfig,
    method: str,
    url: str,
    payload: dict | list | None = None,
    headers: dict | None = None,
) -> Tuple[dict, int, bool]:
    """Send a single request to K8s and return the decoded JSON response.

    The `headers` augment the default headers of the client, ie they never
    replace the credentials.

    Returns `(response, status_code, err)`. The `err` flag is only set if K8s
    never produced a usable response, ie the request failed for network
    reasons or the body was not JSON. The status code is -1 if there was no
    response at all.

    """
    meta_log = {"component": "k8s", "method": method, "url": url}

    try:
        raw = await _call(k8scfg, method, url, payload=payload, headers=headers)
    except WEB_EXCEPTIONS as err:
        logit.error("giving up", {**meta_log, "reason": str(err)})
        return ({}, -1, True)

    try:
        response = json.loads(raw.text)
    except json.decoder.JSONDecodeError as err:
        meta_log.update(
            status=raw.status_code, reason=f"{err.msg} at {err.lineno}:{err.colno}"
        )
        logit.error("K8s sent corrupt JSON", meta_log)
        return ({}, raw.status_code, True)

    logit.debug("request", {**meta_log, "status": raw.status_code, "payload": payload})
    return (response, raw.status_code, False)


def _expect_ok(method: str, url: str, resp: dict, code: int, err: bool):
    if err or code != 200:
        meta_log = {"component": "k8s", "method": method, "url": url}
        logit.error("unexpected response", {**meta_log, "status": code, "resp": resp})
        return (resp, True)
    return (resp, False)


async def get(k8scfg: K8sConfig, url: str) -> Tuple[dict, bool]:
    """Return the resource at `url` and an error flag."""
    resp, code, err = await request(k8scfg, "GET", url, payload=None, headers=None)
    return _expect_ok("GET", url, resp, code, err)


async def patch(
    k8scfg: K8sConfig, url: str, payload: List[Dict[str, str | list]]
) -> Tuple[dict, bool]:
    """Apply the JSON patch `payload` to the resource at `url`."""
    resp, code, err = await request(k8scfg, "PATCH", url, payload, JSON_PATCH)
    return _expect_ok("PATCH", url, resp, code, err)
