import io

import httpx
import pytest
from PIL import Image

INDEX = "https://gallery.test/photos"


def make_jpeg(color="red", size=(8, 8)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, "JPEG")
    return buf.getvalue()


def listing(*names) -> str:
    """An Apache-style index page with one anchor per line."""
    return "\n".join(f'<a href="{n}">{n}</a>' for n in names)


class FakeGallery:
    """Routes gallery URLs to canned responses; unknown URLs 404.

    A status of None simulates a connection failure.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, path: str, body=b"", status=200):
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.routes[f"{INDEX}/{path}"] = (status, body)

    def add_entry(self, year, identifier, document, folder="text", high=None, medium=None):
        ext = "txt" if folder == "text" else "xml"
        self.add(f"{year}/{folder}/{identifier}.{ext}", document)
        if high is not None:
            self.add(f"{year}/high/{identifier}.jpg", high)
        if medium is not None:
            self.add(f"{year}/medium/{identifier}.jpg", medium)

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        status, body = self.routes.get(url, (404, b"Not Found"))
        if status is None:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(status, content=body)

    def count(self, path: str) -> int:
        return self.requests.count(f"{INDEX}/{path}")


@pytest.fixture
def gallery():
    return FakeGallery()


@pytest.fixture
def client(gallery):
    with httpx.Client(transport=httpx.MockTransport(gallery.handler)) as c:
        yield c


@pytest.fixture
def jpeg():
    return make_jpeg
