import pytest

from registry_redirect.routing import Handler, is_allowed_method, match_route


@pytest.mark.parametrize("path", ["/v2", "/v2/"])
def test_ping_routes(path):
    match = match_route(path)
    assert match is not None
    assert match.handler == Handler.PING


def test_token_route():
    assert match_route("/token").handler == Handler.TOKEN
    assert match_route("/token/extra") is None


@pytest.mark.parametrize(
    "path, repo, kind, reference",
    [
        ("/v2/static/manifests/latest", "static", "manifests", "latest"),
        ("/v2/chainguard/static/manifests/sha256:abc", "chainguard/static", "manifests", "sha256:abc"),
        ("/v2/a/b/c/blobs/sha256:def", "a/b/c", "blobs", "sha256:def"),
        ("/v2/distroless/static/tags/list", "distroless/static", "tags", "list"),
    ],
)
def test_proxy_routes(path, repo, kind, reference):
    match = match_route(path)
    assert match.handler == Handler.PROXY
    assert match.repo == repo
    assert match.kind == kind
    assert match.reference == reference


def test_repo_is_everything_before_last_two_segments():
    match = match_route("/v2/weird/manifests/name/manifests/v1")
    assert match.repo == "weird/manifests/name"
    assert match.reference == "v1"


@pytest.mark.parametrize(
    "path",
    [
        "/",
        "/v1/static/manifests/latest",
        "/v2/static/tags/other",
        "/v2/manifests/latest",
        "/v2/static/blobs/uploads/",
        "/v2/_catalog",
    ],
)
def test_unknown_paths(path):
    assert match_route(path) is None


@pytest.mark.parametrize("method, allowed", [
    ("GET", True),
    ("HEAD", True),
    ("head", True),
    ("POST", False),
    ("PUT", False),
    ("PATCH", False),
    ("DELETE", False),
])
def test_only_reads_are_allowed(method, allowed):
    assert is_allowed_method(method) is allowed
