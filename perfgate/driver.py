"""Workload driver: issue HTTP requests against a target and record samples.

Two strategies share one sample-recording contract:

- ``saturation``: a fixed number of workers keep one request each in flight
  until a fixed deadline passes.
- ``trickle``: a single request in flight at a time, dispatched at a fixed
  spacing, to produce background telemetry rather than stress.
"""

import asyncio
import itertools
import logging
import random
import threading
import time
import uuid
from typing import List, Optional

import httpx

from perfgate.models import (
    MODE_SATURATION,
    MODE_TRICKLE,
    ORDER_CYCLE,
    ORDER_RANDOM,
    DriverConfig,
    LoadTestRun,
    RequestSample,
)

logger = logging.getLogger(__name__)


class DriverConfigError(Exception):
    """Raised when a driver configuration is invalid; no requests are sent."""


def validate_config(config: DriverConfig) -> None:
    """Check a DriverConfig and raise DriverConfigError listing all problems."""
    errors: List[str] = []

    if not config.base_url:
        errors.append("base_url is required")
    if not config.endpoints:
        errors.append("at least one endpoint is required")
    for i, path in enumerate(config.endpoints):
        if not isinstance(path, str) or not path.startswith("/"):
            errors.append(f"endpoints[{i}] must be a path starting with '/'")
    if config.mode not in (MODE_TRICKLE, MODE_SATURATION):
        errors.append(f"unknown mode: {config.mode!r} (expected trickle or saturation)")
    if config.order not in (ORDER_RANDOM, ORDER_CYCLE):
        errors.append(f"unknown order: {config.order!r} (expected random or cycle)")
    if config.timeout_seconds <= 0:
        errors.append("timeout_seconds must be positive")

    if config.mode == MODE_SATURATION:
        if config.concurrency < 1:
            errors.append("concurrency must be >= 1")
        if config.duration_seconds <= 0:
            errors.append("duration_seconds must be positive")
    elif config.mode == MODE_TRICKLE:
        if config.requests < 1:
            errors.append("requests must be >= 1")
        if config.interval_ms < 0:
            errors.append("interval_ms must not be negative")

    if errors:
        raise DriverConfigError(
            "invalid driver configuration:\n  - " + "\n  - ".join(errors)
        )


def run(
    config: DriverConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    cancel: Optional[threading.Event] = None,
) -> LoadTestRun:
    """Run a load test and return the sealed LoadTestRun.

    Args:
        config: Driver configuration.
        transport: Optional httpx transport (e.g. ASGITransport for an
            in-process app). Defaults to real network I/O.
        cancel: Optional event; once set, no new requests are dispatched and
            the run is sealed with the samples collected so far.

    Raises:
        DriverConfigError: If the configuration is invalid.
    """
    validate_config(config)
    return asyncio.run(_run_async(config, transport, cancel))


async def _run_async(config, transport, cancel) -> LoadTestRun:
    run_id = uuid.uuid4().hex[:12]
    rng = random.Random(config.seed)
    cancel = cancel or threading.Event()

    logger.info(
        "starting %s run %s against %s (%d endpoints)",
        config.mode, run_id, config.base_url, len(config.endpoints),
    )
    started_at = time.time()
    started_mono = time.monotonic()
    async with httpx.AsyncClient(
        base_url=config.base_url,
        transport=transport,
        timeout=config.timeout_seconds,
    ) as client:
        if config.mode == MODE_SATURATION:
            samples = await _saturate(client, config, rng, started_at, started_mono, cancel)
        else:
            samples = await _trickle(client, config, rng, cancel)
    ended_at = time.time()

    logger.info(
        "finished run %s: %d samples in %.2fs%s",
        run_id, len(samples), ended_at - started_at,
        " (cancelled)" if cancel.is_set() else "",
    )
    return LoadTestRun(
        run_id=run_id,
        started_at=started_at,
        ended_at=ended_at,
        config=config,
        samples=tuple(samples),
        cancelled=cancel.is_set(),
    )


async def _saturate(client, config, rng, started_at, started_mono, cancel) -> List[RequestSample]:
    deadline = started_mono + config.duration_seconds
    buffers: List[List[RequestSample]] = [[] for _ in range(config.concurrency)]

    async def worker(index: int) -> None:
        if config.order == ORDER_CYCLE:
            offset = index % len(config.endpoints)
            paths = itertools.cycle(config.endpoints[offset:] + config.endpoints[:offset])
        else:
            paths = iter(lambda: rng.choice(config.endpoints), None)

        while not cancel.is_set():
            now = time.monotonic()
            if now >= deadline:
                break
            issued_at = started_at + (now - started_mono)
            buffers[index].append(await _issue(client, config.method, next(paths), issued_at))
            # let the other workers dispatch between requests
            await asyncio.sleep(0)

    await asyncio.gather(*(worker(i) for i in range(config.concurrency)))
    return [sample for buffer in buffers for sample in buffer]


async def _trickle(client, config, rng, cancel) -> List[RequestSample]:
    samples: List[RequestSample] = []
    interval = config.interval_ms / 1000.0

    for i in range(config.requests):
        if cancel.is_set():
            break
        dispatched = time.perf_counter()
        path = rng.choice(config.endpoints)
        sample = await _issue(client, config.method, path, time.time())
        samples.append(sample)
        logger.info("requested %s: %s", path, sample.status or sample.failure)

        if i < config.requests - 1:
            remaining = interval - (time.perf_counter() - dispatched)
            if remaining > 0:
                await asyncio.sleep(remaining)
    return samples


async def _issue(
    client: httpx.AsyncClient, method: str, path: str, issued_at: float
) -> RequestSample:
    start = time.perf_counter()
    try:
        response = await client.request(method, path)
    except httpx.TimeoutException:
        failure = "timeout"
    except httpx.ConnectError:
        failure = "connect-error"
    except httpx.TransportError:
        failure = "transport-error"
    except httpx.RequestError:
        failure = "request-error"
    else:
        return RequestSample(
            path=path,
            method=method,
            issued_at=issued_at,
            latency_ms=(time.perf_counter() - start) * 1000.0,
            status=response.status_code,
            bytes=len(response.content),
        )

    logger.debug("request to %s failed: %s", path, failure)
    return RequestSample(
        path=path,
        method=method,
        issued_at=issued_at,
        latency_ms=(time.perf_counter() - start) * 1000.0,
        failure=failure,
    )
