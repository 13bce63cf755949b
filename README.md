# plnk

The shared HTTP transport policy for a client of the Planka kanban server.
`plnk.transport` decides how requests go out. It does not send them itself.

- It caps the number of requests in flight with a semaphore.
- It limits the request rate with a token bucket (`RateLimiter`).
- It decides which failures to retry and how long to wait before each retry.
  The wait uses exponential backoff, optional jitter and the `Retry-After`
  header.

The package has no dependencies outside the standard library.

## Install

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Policy

`TransportPolicy` is a frozen dataclass. Its defaults are:

| field                     | default |
|---------------------------|---------|
| `max_in_flight`           | 8       |
| `rate_limit_per_second`   | 10      |
| `burst_size`              | 10      |
| `retry_attempts`          | 2       |
| `retry_base_delay_ms`     | 250     |
| `retry_max_delay_ms`      | 2000    |
| `retry_jitter`            | True    |
| `retry_safe_methods_only` | True    |

`TransportPolicy.validate()` raises `InvalidOptionValue`, a subclass of
`ValueError`, when a policy is inconsistent. The error's `field` attribute
names the field at fault, for example `transport.burst_size`. A policy is
inconsistent when:

- `max_in_flight` is below 1;
- `rate_limit_per_second` or `burst_size` is set below 1;
- `burst_size` is set without `rate_limit_per_second`;
- `retry_base_delay_ms` is below 1;
- `retry_max_delay_ms` is smaller than `retry_base_delay_ms`.

`TransportRuntime` validates the policy when it is built.

## Runtime

```python
import asyncio
from plnk.transport import TransportPolicy, TransportRuntime

async def call(runtime):
    with await runtime.acquire():
        ...  # issue one HTTP request here

async def main():
    runtime = TransportRuntime(TransportPolicy(max_in_flight=4, rate_limit_per_second=5))
    await call(runtime)

asyncio.run(main())
```

`acquire()` waits for a concurrency permit and, when a rate limit is set, for
a token. It returns a `TransportGuard`. The permit goes back when the `with`
block ends or when `guard.release()` is called.

Retry decisions and delays:

```python
runtime.should_retry_status("GET", 503)     # True: 429, 502, 503 and 504 are retried
runtime.should_retry_status("POST", 503)    # False while retry_safe_methods_only is set
runtime.retry_delay_for_attempt(1)          # a datetime.timedelta, jittered
runtime.retry_delay_from_headers({"Retry-After": "3"})  # timedelta(seconds=3)
```

- Only GET, HEAD and OPTIONS are retried while `retry_safe_methods_only` is
  set. Nothing is retried when `retry_attempts` is 0.
- `should_retry_error` treats `TimeoutError` and `ConnectionError` as
  transient.
- `retry_delay_for_attempt(n)` is `retry_base_delay_ms * 2**(n-1)`, capped at
  `retry_max_delay_ms`. With jitter on, the result lies between half that
  value and the full value.
- `Retry-After` may hold a number of seconds or an HTTP date. The delay is
  clamped to 30 seconds. A date in the past, or a value that cannot be
  parsed, gives `None`.
- `await runtime.sleep_before_retry(method, path, retry_number, delay, source)`
  logs the retry at debug level and then sleeps for `delay`.

Log records go to the `plnk.transport` logger.

## What is not here

This package has no HTTP client, no Planka API calls, no data models for
projects, boards or cards, no configuration file handling and no
command-line program. It only supplies the transport policy that such a
client would apply to each request.