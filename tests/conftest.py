"""
Shared fixtures and in-memory doubles for the upload pipeline tests
"""

import asyncio
import json
import threading
from collections import defaultdict
from datetime import datetime
from fnmatch import fnmatch

import httpx
import pytest

from chunked_upload.config import UploadConfig
from chunked_upload.services.session_controller import UploadSessionController

API_URL = "http://api.test"
TOKEN = "test-token"
MASTER_URL = "https://cdn.test/videos/master.m3u8"


class SleepRecorder:
    """Stands in for asyncio.sleep; records requested delays and only yields"""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)
        await asyncio.sleep(0)


class FakeClock:
    """Monotonic clock that only moves when its sleep is awaited"""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeDestination:
    """httpx MockTransport handler playing both the upload API and S3"""

    def __init__(
        self,
        statuses=None,
        part_failures=None,
        put_delays=None,
        block_puts=False,
        fail_routes=None,
        fail_status=503,
        initiate_delay=0,
        session_id="sess-1",
    ):
        self.session_id = session_id
        self.calls = []
        self.puts = []
        self.payloads = {}
        self.put_attempts = defaultdict(int)
        self.part_failures = dict(part_failures or {})
        self.put_delays = dict(put_delays or {})
        self.block_puts = block_puts
        self.fail_routes = dict(fail_routes or {})
        self.fail_status = fail_status
        self.initiate_delay = initiate_delay
        self.statuses = list(statuses or [{"status": "COMPLETED", "outputs": {"master": MASTER_URL}}])
        self.in_flight = 0
        self.max_in_flight = 0
        self.puts_started = 0
        self.release = asyncio.Event()

    def paths(self):
        return [path for _, path, _ in self.calls]

    def bodies(self, path):
        return [body for _, p, body in self.calls if p == path]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "storage.test":
            return await self._put_part(request)

        path = request.url.path.replace("/upload/chunked", "", 1)
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, path, body))

        if request.headers.get("authorization") != f"Bearer {TOKEN}":
            return httpx.Response(401, json={"detail": "Missing bearer token"})

        route = path.split("/")[1]
        if self.fail_routes.get(route, 0) > 0:
            self.fail_routes[route] -= 1
            return httpx.Response(self.fail_status, json={"detail": f"{route} unavailable"})

        if route == "initiate":
            await asyncio.sleep(self.initiate_delay)
            return self._ok({"sessionId": self.session_id, "key": "uploads/x"})
        if route == "chunk-urls":
            parts = [
                {"partNumber": n, "uploadUrl": f"https://storage.test/part/{n}"}
                for n in body["partNumbers"]
            ]
            return self._ok({"parts": parts})
        if route in ("mark-uploaded", "complete", "cancel"):
            return self._ok({"sessionId": body["sessionId"]})
        if route == "status":
            current = self.statuses[0]
            if len(self.statuses) > 1:
                self.statuses.pop(0)
            if current == "error":
                return httpx.Response(500, json={"detail": "status backend down"})
            return self._ok(current)
        return httpx.Response(404, json={"detail": "Not Found"})

    async def _put_part(self, request):
        part_number = int(request.url.path.rsplit("/", 1)[1])
        self.puts.append(part_number)
        self.put_attempts[part_number] += 1
        self.puts_started += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.block_puts is True or part_number in (self.block_puts or ()):
                await self.release.wait()
            await asyncio.sleep(self.put_delays.get(part_number, 0))
            if self.part_failures.get(part_number, 0) > 0:
                self.part_failures[part_number] -= 1
                return httpx.Response(500, text="SlowDown")
            self.payloads[part_number] = request.content
            return httpx.Response(200, headers={"ETag": f'"etag-{part_number}"'})
        finally:
            self.in_flight -= 1

    @staticmethod
    def _ok(data):
        return httpx.Response(200, json={"success": True, "data": data})


class FakeS3:
    """The slice of the boto3 S3 client the destination service uses"""

    def __init__(self):
        self.uploads = {}
        self.completed = {}
        self.aborted = []
        self.presigned = []
        self.threads = []
        self._counter = 0

    def create_multipart_upload(self, Bucket, Key, ContentType=None, Metadata=None):
        self.threads.append(threading.get_ident())
        self._counter += 1
        upload_id = f"upload-{self._counter}"
        self.uploads[upload_id] = {"Key": Key, "UploadId": upload_id, "Initiated": datetime.now()}
        return {"UploadId": upload_id}

    def generate_presigned_url(self, ClientMethod, Params=None, ExpiresIn=3600, HttpMethod=None):
        self.presigned.append((ClientMethod, Params, ExpiresIn, HttpMethod))
        return f"https://storage.test/part/{Params['PartNumber']}?uploadId={Params['UploadId']}"

    def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        self.threads.append(threading.get_ident())
        self.completed[UploadId] = MultipartUpload["Parts"]
        self.uploads.pop(UploadId, None)
        return {"Location": f"https://{Bucket}.s3.test/{Key}", "ETag": '"final"'}

    def abort_multipart_upload(self, Bucket, Key, UploadId):
        self.threads.append(threading.get_ident())
        self.aborted.append(UploadId)
        self.uploads.pop(UploadId, None)

    def list_multipart_uploads(self, Bucket, Prefix=""):
        return {"Uploads": [u for u in self.uploads.values() if u["Key"].startswith(Prefix)]}


def _key(key):
    return key.decode() if isinstance(key, bytes) else key


class FakeRedis:
    """Dict-backed stand-in for redis.Redis(decode_responses=False)"""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.lists = defaultdict(list)

    def get(self, key):
        return self.store.get(_key(key))

    def set(self, key, value):
        self.store[_key(key)] = value.encode() if isinstance(value, str) else value
        self.ttls[_key(key)] = -1

    def setex(self, key, ttl, value):
        self.set(key, value)
        self.ttls[_key(key)] = ttl

    def keys(self, pattern):
        return [k.encode() for k in self.store if fnmatch(k, pattern)]

    def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += self.store.pop(_key(key), None) is not None
            self.ttls.pop(_key(key), None)
        return removed

    def ttl(self, key):
        return self.ttls.get(_key(key), -2)

    def rpush(self, name, *values):
        self.lists[_key(name)].extend(values)
        return len(self.lists[_key(name)])


@pytest.fixture
def wait_until():
    async def waiter(predicate, timeout=2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition was not reached in time")
            await asyncio.sleep(0.005)

    return waiter


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def make_controller(sleep_recorder):
    """Build a controller wired to a FakeDestination through httpx.MockTransport"""

    def factory(destination, session=None, listeners=(), clock=None, **overrides):
        values = {
            "api_base_url": API_URL,
            "chunk_size_bytes": 1024,
            "accepted_mime_types": ["video/*"],
        }
        values.update(overrides)
        config = UploadConfig(**values)
        client = httpx.AsyncClient(transport=httpx.MockTransport(destination))
        kwargs = {"sleep": sleep_recorder}
        if clock is not None:
            kwargs = {"sleep": clock.sleep, "clock": clock}
        return UploadSessionController.from_config(
            config,
            TOKEN,
            http_client=client,
            session=session,
            listeners=listeners,
            **kwargs,
        )

    return factory
