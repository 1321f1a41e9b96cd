"""
Tests for the rewrite strategies.

Tests cover:
- Redirect Location rewriting (relative and absolute)
- Markup attribute and srcset rewriting, charset preservation
- Source-text URL and dynamic import rewriting
- Passthrough of binary bodies
- Outbound header sanitization on every strategy
"""

import pytest
from bs4 import BeautifulSoup

from cors_proxy.forward_proxy.classifier import Strategy
from cors_proxy.forward_proxy.codec import RewriteContext, decode, encode
from cors_proxy.forward_proxy.rewriters import (
    apply_strategy,
    passthrough,
    rewrite_markup,
    rewrite_redirect,
    rewrite_reference,
    rewrite_source_text,
    rewrite_srcset,
)
from cors_proxy.utils_tests.upstream_mock import upstream_response
from cors_proxy.vars import PROXY_PREFIX

ORIGIN = "http://proxy.local"
CONTEXT = RewriteContext(proxy_origin=ORIGIN, target_url="https://example.com/dir/page.html")


def proxied(url: str) -> str:
    return f"{ORIGIN}{encode(url)}"


def header(result, name):
    values = [v for k, v in result.headers if k.lower() == name]
    return values[0] if values else None


@pytest.fixture
def html_upstream():
    def _create(body: str, headers=None, encoding="utf-8"):
        return upstream_response(
            200,
            headers or {"content-type": "text/html; charset=utf-8", "content-length": "999"},
            body.encode(encoding),
        )

    return _create


class TestRewriteReference:
    def test_relative_reference_is_resolved_against_target(self):
        assert rewrite_reference(CONTEXT, "img/a.png") == proxied(
            "https://example.com/dir/img/a.png"
        )

    def test_root_relative_reference(self):
        assert rewrite_reference(CONTEXT, "/a.png") == proxied("https://example.com/a.png")

    def test_protocol_relative_reference(self):
        assert rewrite_reference(CONTEXT, "//cdn.example.net/x.js") == proxied(
            "https://cdn.example.net/x.js"
        )

    @pytest.mark.parametrize(
        "value",
        ["", "#section", "mailto:someone@example.com", "javascript:void(0)", "data:image/png;base64,AAAA"],
    )
    def test_non_http_references_untouched(self, value):
        assert rewrite_reference(CONTEXT, value) == value

    def test_unparsable_reference_untouched(self):
        assert rewrite_reference(CONTEXT, "http://[broken") == "http://[broken"

    def test_already_proxied_reference_untouched(self):
        already = proxied("https://example.com/a.png")
        assert rewrite_reference(CONTEXT, already) == already


class TestRewriteSrcset:
    def test_descriptors_preserved(self):
        result = rewrite_srcset(CONTEXT, "small.jpg 480w,  /large.jpg 1080w")
        assert result == (
            f"{proxied('https://example.com/dir/small.jpg')} 480w, "
            f"{proxied('https://example.com/large.jpg')} 1080w"
        )

    def test_candidate_without_descriptor(self):
        assert rewrite_srcset(CONTEXT, "/a.webp") == proxied("https://example.com/a.webp")


class TestRewriteRedirect:
    def test_relative_location(self):
        upstream = upstream_response(301, {"location": "/new", "content-length": "12"}, b"Moved here..")
        context = RewriteContext(proxy_origin=ORIGIN, target_url="https://example.com/old")

        result = rewrite_redirect(upstream, context)

        assert result.status_code == 301
        assert result.body == b""
        assert header(result, "location") == proxied("https://example.com/new")
        assert header(result, "content-length") is None
        assert header(result, "access-control-allow-origin") == "*"

    def test_absolute_location(self):
        upstream = upstream_response(302, {"location": "https://other.example/landing?x=1"})

        result = rewrite_redirect(upstream, CONTEXT)

        location = header(result, "location")
        assert location.startswith(f"{ORIGIN}{PROXY_PREFIX}")
        assert decode(location[len(ORIGIN):]) == "https://other.example/landing?x=1"

    def test_single_location_header(self):
        upstream = upstream_response(307, {"location": "next"})
        result = rewrite_redirect(upstream, CONTEXT)
        assert len([k for k, _ in result.headers if k.lower() == "location"]) == 1

    def test_non_http_location_left_alone(self):
        upstream = upstream_response(302, {"location": "mailto:help@example.com"})
        result = rewrite_redirect(upstream, CONTEXT)
        assert header(result, "location") == "mailto:help@example.com"


class TestRewriteMarkup:
    def test_rewrites_url_attributes(self, html_upstream):
        upstream = html_upstream(
            "<html><head>"
            '<link rel="stylesheet" href="style.css">'
            '<script src="/js/app.js"></script>'
            "</head><body>"
            '<img src="/logo.png">'
            '<a href="https://other.org/x?y=1&amp;z=2">x</a>'
            '<form action="submit" method="post"></form>'
            "</body></html>"
        )

        result = rewrite_markup(upstream, CONTEXT)
        soup = BeautifulSoup(result.body, "html.parser")

        assert soup.find("link")["href"] == proxied("https://example.com/dir/style.css")
        assert soup.find("script")["src"] == proxied("https://example.com/js/app.js")
        assert soup.find("img")["src"] == proxied("https://example.com/logo.png")
        assert soup.find("a")["href"] == proxied("https://other.org/x?y=1&z=2")
        assert soup.find("form")["action"] == proxied("https://example.com/dir/submit")

    def test_every_rewritten_value_decodes_to_resolved_url(self, html_upstream):
        upstream = html_upstream(
            '<img src="../up.png"><a href="?page=2">next</a><script src="lib.js"></script>'
        )

        result = rewrite_markup(upstream, CONTEXT)
        soup = BeautifulSoup(result.body, "html.parser")

        values = [soup.find("img")["src"], soup.find("a")["href"], soup.find("script")["src"]]
        assert all(v.startswith(f"{ORIGIN}{PROXY_PREFIX}") for v in values)
        assert [decode(v[len(ORIGIN):]) for v in values] == [
            "https://example.com/up.png",
            "https://example.com/dir/page.html?page=2",
            "https://example.com/dir/lib.js",
        ]

    def test_srcset_on_img_and_source(self, html_upstream):
        upstream = html_upstream(
            "<picture>"
            '<source srcset="a.webp 1x, b.webp 2x" type="image/webp">'
            '<img src="a.jpg" srcset="/a-small.jpg 480w">'
            "</picture>"
        )

        result = rewrite_markup(upstream, CONTEXT)
        soup = BeautifulSoup(result.body, "html.parser")

        assert soup.find("source")["srcset"] == (
            f"{proxied('https://example.com/dir/a.webp')} 1x, "
            f"{proxied('https://example.com/dir/b.webp')} 2x"
        )
        assert soup.find("img")["srcset"] == f"{proxied('https://example.com/a-small.jpg')} 480w"

    def test_unrelated_attributes_untouched(self, html_upstream):
        upstream = html_upstream(
            '<div data-src="/x.png"></div><iframe src="/frame"></iframe><a href="#top">t</a>'
        )

        result = rewrite_markup(upstream, CONTEXT)
        soup = BeautifulSoup(result.body, "html.parser")

        assert soup.find("div")["data-src"] == "/x.png"
        assert soup.find("iframe")["src"] == "/frame"
        assert soup.find("a")["href"] == "#top"

    def test_broken_url_does_not_abort_rewrite(self, html_upstream):
        upstream = html_upstream('<a href="http://[broken">x</a><img src="/ok.png">')

        result = rewrite_markup(upstream, CONTEXT)
        soup = BeautifulSoup(result.body, "html.parser")

        assert soup.find("a")["href"] == "http://[broken"
        assert soup.find("img")["src"] == proxied("https://example.com/ok.png")

    def test_void_elements_are_not_self_closed(self, html_upstream):
        result = rewrite_markup(html_upstream('<img src="/logo.png">'), CONTEXT)
        assert result.body == f'<img src="{proxied("https://example.com/logo.png")}">'.encode()

    def test_rewriting_twice_is_idempotent(self, html_upstream):
        first = rewrite_markup(html_upstream('<img src="/logo.png">'), CONTEXT)
        second = rewrite_markup(
            upstream_response(200, {"content-type": "text/html"}, first.body), CONTEXT
        )
        assert second.body == first.body

    def test_declared_charset_is_kept(self, html_upstream):
        upstream = html_upstream(
            '<p>café</p><img src="/a.png">',
            headers={"content-type": "text/html; charset=iso-8859-1"},
            encoding="iso-8859-1",
        )

        result = rewrite_markup(upstream, CONTEXT)

        text = result.body.decode("iso-8859-1")
        assert "café" in text
        assert proxied("https://example.com/a.png") in text

    def test_length_and_encoding_headers_dropped(self, html_upstream):
        upstream = html_upstream(
            "<p>hi</p>",
            headers={"content-type": "text/html", "content-length": "9", "content-encoding": "identity"},
        )

        result = rewrite_markup(upstream, CONTEXT)

        assert header(result, "content-length") is None
        assert header(result, "content-encoding") is None
        assert header(result, "content-type") == "text/html"
        assert result.strategy == Strategy.MARKUP


class TestRewriteSourceText:
    def _upstream(self, body: bytes, content_type="application/javascript"):
        return upstream_response(200, {"content-type": content_type, "content-length": str(len(body))}, body)

    def test_fetch_call_rewritten(self):
        upstream = self._upstream(b'fetch("https://api.example.com/data").then(r => r.json());')

        result = rewrite_source_text(upstream, CONTEXT)

        assert result.body == (
            f'fetch("{proxied("https://api.example.com/data")}").then(r => r.json());'
        ).encode()
        assert header(result, "content-length") is None

    def test_non_url_strings_byte_identical(self):
        body = b"const greeting = \"hello world\"; const t = 'http:/nope'; x(`tmpl`);"
        upstream = self._upstream(body)

        result = rewrite_source_text(upstream, CONTEXT)

        assert result.body == body

    @pytest.mark.parametrize(
        "template",
        [
            "var a = '{url}';",
            "var a = `{url}`;",
            'background: url({url});',
            'const u = "{url}"',
        ],
    )
    def test_delimiters_preserved(self, template):
        url = "https://cdn.example.com/assets/font.woff2?v=1"
        upstream = self._upstream(template.format(url=url).encode())

        result = rewrite_source_text(upstream, CONTEXT)

        assert result.body == template.format(url=proxied(url)).encode()

    def test_balanced_parentheses_kept_inside_url(self):
        url = "https://en.wikipedia.org/wiki/Foo_(bar)"
        upstream = self._upstream(f'link("{url}"); background: url({url});'.encode())

        result = rewrite_source_text(upstream, CONTEXT)

        assert result.body == (
            f'link("{proxied(url)}"); background: url({proxied(url)});'
        ).encode()

    def test_dynamic_import_keeps_quote_character(self):
        upstream = self._upstream(b"await import( 'https://esm.sh/preact@10' );")

        result = rewrite_source_text(upstream, CONTEXT)

        assert result.body == f"await import( '{proxied('https://esm.sh/preact@10')}' );".encode()

    def test_relative_urls_not_resolved(self):
        body = b'fetch("/api/users"); load("./chunk.js");'
        result = rewrite_source_text(self._upstream(body), CONTEXT)
        assert result.body == body

    def test_unparsable_candidate_left_verbatim(self):
        body = b'const bad = "http://[oops";'
        result = rewrite_source_text(self._upstream(body), CONTEXT)
        assert result.body == body

    def test_template_interpolation_kept_outside_encoded_part(self):
        upstream = self._upstream(b"fetch(`https://api.example.com/users/${id}`)")

        result = rewrite_source_text(upstream, CONTEXT)

        assert result.body == (
            f"fetch(`{proxied('https://api.example.com/users/')}${{id}}`)"
        ).encode()

    def test_rewriting_twice_is_idempotent(self):
        first = rewrite_source_text(
            self._upstream(b'import("https://esm.sh/react"); fetch("https://a.example/x")'),
            CONTEXT,
        )
        second = rewrite_source_text(self._upstream(first.body), CONTEXT)
        assert second.body == first.body

    def test_undecodable_bytes_survive(self):
        body = b'// \xff\xfe\nfetch("https://a.example/x")'

        result = rewrite_source_text(self._upstream(body), CONTEXT)

        assert result.body.startswith(b"// \xff\xfe\n")
        assert proxied("https://a.example/x").encode() in result.body


class TestPassthrough:
    def test_binary_body_unchanged(self):
        png = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR"
        upstream = upstream_response(
            404, {"content-type": "image/png", "content-length": str(len(png)), "cache-control": "no-store"}, png
        )

        result = passthrough(upstream, CONTEXT)

        assert result.status_code == 404
        assert result.body is png
        assert header(result, "cache-control") == "no-store"
        assert header(result, "content-length") is None
        assert header(result, "access-control-expose-headers") == "*"


def test_apply_strategy_dispatches():
    upstream = upstream_response(200, {"content-type": "application/javascript"}, b"'https://a.example/'")
    result = apply_strategy(Strategy.SOURCE_TEXT, upstream, CONTEXT)
    assert result.strategy == Strategy.SOURCE_TEXT
    assert result.body == f"'{proxied('https://a.example/')}'".encode()
