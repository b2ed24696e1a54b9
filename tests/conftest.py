import json

import httpx
import pytest

from payment_hub.config import Settings
from payment_hub.hooks import PaymentHooks
from payment_hub.main import build_hub


class FakeProcessor:
    """
    Stand-in for the processor API: records every call and answers from a
    per-endpoint queue. The last queued answer is repeated once the queue is
    down to one entry. An answer may be a JSON body, an ``httpx.Response``, an
    exception to raise, or a callable taking the request body.
    """

    def __init__(self):
        self.calls = []
        self.routes = {}

    def on(self, endpoint, *responses):
        self.routes.setdefault(endpoint, []).extend(responses)
        return self

    def calls_to(self, endpoint):
        return [body for name, body in self.calls if name == endpoint]

    def handler(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path.rsplit("/", 1)[-1]
        body = json.loads(request.content)
        self.calls.append((endpoint, body))
        queue = self.routes.get(endpoint)
        if not queue:
            return httpx.Response(404, json={"status": "error", "message": "no such endpoint"})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(response):
            response = response(body)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class RecordingHooks(PaymentHooks):
    def __init__(self):
        self.fired = []

    async def fire(self, hook_name, event):
        self.fired.append((hook_name, event))
        await super().fire(hook_name, event)

    @property
    def names(self):
        return [name for name, _ in self.fired]


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        processor_base_url="https://processor.test/api/v1",
        public_key="pub-key",
        private_key="priv-key",
        webhook_secret="webhook-secret",
        domain_url="https://hub.test",
        max_retries=0,
        retry_backoff_seconds=0,
    )


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def hooks():
    return RecordingHooks()


@pytest.fixture
def hub(settings, processor, hooks):
    return build_hub(settings, transport=processor.transport, hooks=hooks)
