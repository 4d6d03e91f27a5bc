from urllib.error import URLError

from canvasflow.metadata import fetch_metadata, hostname_title


class _Page:
    def __init__(self, body, content_type="text/html; charset=utf-8"):
        self.body = body
        self.headers = {"Content-Type": content_type}

    def read(self, limit):
        return self.body[:limit]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_hostname_title():
    assert hostname_title("https://www.example.com/a") == "example.com"
    assert hostname_title("https://docs.python.org") == "docs.python.org"


def test_fetch_reads_title_and_preview(monkeypatch):
    html = (
        b"<html><head><title>\n  Example &amp; Co </title>"
        b'<meta property="og:image" content="https://img.example/p.png"></head></html>'
    )
    monkeypatch.setattr("canvasflow.metadata.urlopen", lambda req, timeout: _Page(html))
    meta = fetch_metadata("https://example.com")
    assert meta == {"title": "Example & Co", "thumbnail_url": "https://img.example/p.png"}


def test_fetch_falls_back_to_hostname(monkeypatch):
    def boom(req, timeout):
        raise URLError("offline")

    monkeypatch.setattr("canvasflow.metadata.urlopen", boom)
    assert fetch_metadata("https://www.example.com/x") == {"title": "example.com"}


def test_non_http_urls_are_not_fetched(monkeypatch):
    def fail(req, timeout):
        raise AssertionError("should not fetch")

    monkeypatch.setattr("canvasflow.metadata.urlopen", fail)
    assert fetch_metadata("ftp://files.example.com/a") == {"title": "files.example.com"}
