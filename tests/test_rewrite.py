import json

import pytest
from pydantic import ValidationError

from registry_redirect.rewrite import (
    PrefixRequiredError,
    format_challenge,
    map_scope,
    parse_challenge,
    prefix_required,
    rewrite_headers,
    rewrite_link,
    rewrite_path,
    rewrite_tag_list,
    rewrite_www_authenticate,
    to_client_repo,
    to_upstream_repo,
)
from registry_redirect.settings import Settings, UpstreamConfig, UpstreamKind

HOST = "registry.example.dev"


def ghcr(repo="distroless", prefix="", prefixless_hosts=()):
    return Settings(repo=repo, prefix=prefix, prefixless_hosts=frozenset(prefixless_hosts))


# --- PathRewriter ---


def test_rewrite_path_prepends_repo():
    url = rewrite_path(ghcr(), "/v2/static/manifests/latest", "", HOST)
    assert url == "https://ghcr.io/v2/distroless/static/manifests/latest"


def test_rewrite_path_requires_prefix():
    settings = ghcr(prefix="chainguard")
    with pytest.raises(PrefixRequiredError) as exc_info:
        rewrite_path(settings, "/v2/static/manifests/latest", "", HOST)
    assert exc_info.value.prefix == "chainguard"

    url = rewrite_path(settings, "/v2/chainguard/static/manifests/latest", "", HOST)
    assert url == "https://ghcr.io/v2/distroless/static/manifests/latest"


def test_prefix_is_matched_as_whole_segment():
    settings = ghcr(prefix="chainguard")
    with pytest.raises(PrefixRequiredError):
        rewrite_path(settings, "/v2/chainguardian/static/manifests/latest", "", HOST)


def test_rewrite_path_identity_mode_keeps_query():
    settings = Settings()
    url = rewrite_path(settings, "/v2/foo/bar/tags/list", "n=10&last=abc", HOST)
    assert url == "https://ghcr.io/v2/foo/bar/tags/list?n=10&last=abc"


def test_rewrite_path_gcr_and_custom_upstreams():
    gcr = Settings(upstream=UpstreamConfig(kind=UpstreamKind.GCR), repo="distroless")
    assert rewrite_path(gcr, "/v2/static/blobs/sha256:1", "", HOST) == \
        "https://gcr.io/v2/distroless/static/blobs/sha256:1"

    custom = Settings(upstream=UpstreamConfig(kind=UpstreamKind.CUSTOM, host="gw.internal:5000", scheme="http"))
    assert rewrite_path(custom, "/v2/team/app/manifests/v1", "", HOST) == \
        "http://gw.internal:5000/v2/team/app/manifests/v1"


@pytest.mark.parametrize("host, required", [
    ("registry.example.dev", True),
    ("distroless.dev", False),
    ("distroless.dev:8443", False),
])
def test_prefixless_hosts(host, required):
    settings = ghcr(prefix="chainguard", prefixless_hosts=["distroless.dev"])
    assert prefix_required(settings, host) is required


def test_prefixless_host_does_not_strip_prefix():
    settings = ghcr(prefix="chainguard", prefixless_hosts=["distroless.dev"])
    url = rewrite_path(settings, "/v2/static/manifests/latest", "", "distroless.dev")
    assert url == "https://ghcr.io/v2/distroless/static/manifests/latest"


def test_repo_mapping_both_directions():
    settings = ghcr(prefix="chainguard")
    assert to_upstream_repo(settings, "chainguard/static", HOST) == "distroless/static"
    assert to_client_repo(settings, "distroless/static", HOST) == "chainguard/static"
    # names outside the configured repo are left alone
    assert to_client_repo(settings, "other/static", HOST) == "other/static"


def test_map_scope_handles_multiple_entries():
    scope = "repository:a/b:pull registry:catalog:* repository:c:pull,push"
    mapped = map_scope(scope, lambda name: f"x/{name}")
    assert mapped == "repository:x/a/b:pull registry:catalog:* repository:x/c:pull,push"


# --- Www-Authenticate ---


def test_parse_and_format_challenge():
    value = 'Bearer realm="https://ghcr.io/token",service="ghcr.io",scope="repository:a/b:pull"'
    scheme, params = parse_challenge(value)
    assert scheme == "Bearer"
    assert params == [
        ("realm", "https://ghcr.io/token"),
        ("service", "ghcr.io"),
        ("scope", "repository:a/b:pull"),
    ]
    assert format_challenge(scheme, params) == value


def test_realm_points_back_to_proxy():
    settings = ghcr(prefix="chainguard")
    value = 'Bearer realm="https://ghcr.io/token",service="ghcr.io",scope="repository:distroless/static:pull"'
    rewritten = rewrite_www_authenticate(settings, value, HOST)
    assert rewritten == (
        'Bearer realm="https://registry.example.dev/token",service="ghcr.io",'
        'scope="repository:chainguard/static:pull"'
    )


def test_gcr_realm_drops_v2_token_path():
    settings = Settings(upstream=UpstreamConfig(kind=UpstreamKind.GCR))
    value = 'Bearer realm="https://gcr.io/v2/token",service="gcr.io"'
    rewritten = rewrite_www_authenticate(settings, value, "localhost:8080")
    assert rewritten == 'Bearer realm="https://localhost:8080/token",service="gcr.io"'


def test_foreign_realm_is_untouched():
    settings = ghcr()
    value = 'Bearer realm="https://auth.example.com/token",service="example"'
    assert rewrite_www_authenticate(settings, value, HOST) == value


def test_realm_with_upstream_prefix_in_hostname_is_untouched():
    settings = ghcr()
    value = 'Bearer realm="https://ghcr.io.evil.example/token"'
    assert rewrite_www_authenticate(settings, value, HOST) == value


def test_unparseable_challenge_passes_through():
    settings = ghcr()
    assert rewrite_www_authenticate(settings, "Basic", HOST) == "Basic"


# --- Link ---


def test_link_is_rewritten_to_client_coordinates():
    settings = ghcr(prefix="chainguard")
    value = '</v2/distroless/static/tags/list?last=b&n=2>; rel="next"'
    assert rewrite_link(settings, value, HOST) == \
        '</v2/chainguard/static/tags/list?last=b&n=2>; rel="next"'


def test_link_without_prefix_for_prefixless_host():
    settings = ghcr(prefix="chainguard", prefixless_hosts=["distroless.dev"])
    value = '</v2/distroless/static/tags/list?last=b&n=2>; rel="next"'
    assert rewrite_link(settings, value, "distroless.dev") == \
        '</v2/static/tags/list?last=b&n=2>; rel="next"'


def test_absolute_upstream_link_becomes_relative():
    settings = ghcr()
    value = '<https://ghcr.io/v2/distroless/static/tags/list?last=b>; rel="next"'
    assert rewrite_link(settings, value, HOST) == '</v2/static/tags/list?last=b>; rel="next"'


def test_link_outside_repo_is_untouched():
    settings = ghcr()
    value = '</v2/other/static/tags/list?last=b>; rel="next"'
    assert rewrite_link(settings, value, HOST) == value


def test_link_in_mirror_mode_is_untouched():
    settings = Settings()
    value = '</v2/foo/bar/tags/list?last=b&n=2>; rel="next"'
    assert rewrite_link(settings, value, HOST) == value


def test_rewrite_headers_preserves_other_and_repeated_headers():
    settings = ghcr()
    headers = [
        ("Content-Type", "application/json"),
        ("Link", '</v2/distroless/static/tags/list?last=b>; rel="next"'),
        ("X-Multi", "one"),
        ("X-Multi", "two"),
    ]
    assert rewrite_headers(settings, headers, HOST) == [
        ("Content-Type", "application/json"),
        ("Link", '</v2/static/tags/list?last=b>; rel="next"'),
        ("X-Multi", "one"),
        ("X-Multi", "two"),
    ]


# --- tags/list body ---


def test_tag_list_name_drops_upstream_repo():
    settings = ghcr(repo="chainguard")
    body = json.dumps({"name": "chainguard/static", "tags": ["latest", "v1"]}).encode()
    rewritten = json.loads(rewrite_tag_list(settings, body, HOST))
    assert rewritten == {"name": "static", "tags": ["latest", "v1"]}


def test_tag_list_name_gets_visible_prefix_and_keeps_extra_fields():
    settings = ghcr(prefix="chainguard")
    body = json.dumps({"name": "distroless/static", "tags": ["latest"], "next": "x"}).encode()
    rewritten = json.loads(rewrite_tag_list(settings, body, HOST))
    assert rewritten["name"] == "chainguard/static"
    assert rewritten["next"] == "x"


def test_tag_list_without_tags_stays_without_tags():
    body = json.dumps({"name": "distroless/static"}).encode()
    rewritten = json.loads(rewrite_tag_list(ghcr(), body, HOST))
    assert rewritten == {"name": "static"}


def test_tag_list_keeps_explicit_null_tags():
    body = json.dumps({"name": "distroless/static", "tags": None}).encode()
    rewritten = json.loads(rewrite_tag_list(ghcr(), body, HOST))
    assert rewritten == {"name": "static", "tags": None}


def test_malformed_tag_list_raises():
    with pytest.raises(ValidationError):
        rewrite_tag_list(ghcr(), b"<html>oops</html>", HOST)
