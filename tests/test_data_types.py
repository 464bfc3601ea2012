"""Tests for request fingerprints, outcomes and the request lifecycle."""

import pytest

from courtesy.common.exceptions import (
    CancellationError,
    FailureKind,
    InvalidStateTransition,
    MalformedURLError,
    PermanentRequestError,
    TransientNetworkError,
)
from courtesy.data_types import (
    CacheEntry,
    Cancelled,
    Failure,
    FetchRequest,
    FetchResult,
    HttpMethod,
    RequestState,
    Success,
    normalize_url,
)


class TestNormalizeUrl:
    def test_lowercases_scheme_and_host(self):
        assert (
            normalize_url("HTTPS://Example.COM/Path")
            == "https://example.com/Path"
        )

    def test_drops_default_port_and_fragment(self):
        assert (
            normalize_url("http://example.com:80/a#section")
            == "http://example.com/a"
        )
        assert (
            normalize_url("https://example.com:443/") == "https://example.com/"
        )

    def test_keeps_non_default_port(self):
        assert (
            normalize_url("http://example.com:8080/a")
            == "http://example.com:8080/a"
        )

    def test_empty_path_becomes_slash(self):
        assert normalize_url("http://example.com") == "http://example.com/"

    def test_query_order_is_preserved(self):
        assert (
            normalize_url("http://example.com/?b=2&a=1")
            == "http://example.com/?b=2&a=1"
        )

    @pytest.mark.parametrize(
        "url",
        [
            "example.com/path",
            "ftp://example.com/file",
            "http:///nohost",
            "http://example.com:notaport/",
            "",
        ],
    )
    def test_malformed_urls_raise(self, url):
        with pytest.raises(MalformedURLError):
            normalize_url(url)


class TestFetchRequest:
    def test_host_includes_scheme_and_port(self):
        assert (
            FetchRequest(url="https://Example.com/x").host
            == "https://example.com"
        )
        assert (
            FetchRequest(url="http://127.0.0.1:8080/x").host
            == "http://127.0.0.1:8080"
        )

    def test_same_request_same_key(self):
        a = FetchRequest(url="https://example.com/a", headers={"X-A": "1"})
        b = FetchRequest(url="https://example.com/a", headers={"X-A": "1"})
        assert a.cache_key() == b.cache_key()

    def test_equivalent_urls_share_key(self):
        a = FetchRequest(url="HTTPS://EXAMPLE.com:443/a#frag")
        b = FetchRequest(url="https://example.com/a")
        assert a.cache_key() == b.cache_key()

    def test_header_name_case_and_whitespace_ignored(self):
        a = FetchRequest(
            url="https://example.com/a", headers={"Accept": " text/html "}
        )
        b = FetchRequest(
            url="https://example.com/a", headers={"accept": "text/html"}
        )
        assert a.cache_key() == b.cache_key()

    def test_method_body_and_headers_change_key(self):
        base = FetchRequest(url="https://example.com/a")
        keys = {
            base.cache_key(),
            FetchRequest(
                url="https://example.com/a", method=HttpMethod.POST
            ).cache_key(),
            FetchRequest(
                url="https://example.com/a",
                method=HttpMethod.POST,
                body=b"x=1",
            ).cache_key(),
            FetchRequest(
                url="https://example.com/a", headers={"Accept": "json"}
            ).cache_key(),
        }
        assert len(keys) == 4

    def test_vary_headers_limit_fingerprint(self):
        a = FetchRequest(
            url="https://example.com/a",
            headers={"Accept": "json", "X-Trace": "1"},
        )
        b = FetchRequest(
            url="https://example.com/a",
            headers={"Accept": "json", "X-Trace": "2"},
        )
        assert a.cache_key() != b.cache_key()
        assert a.cache_key(["accept"]) == b.cache_key(["Accept"])

    def test_headers_are_copied_and_read_only(self):
        headers = {"Accept": "json"}
        request = FetchRequest(url="https://example.com/", headers=headers)
        headers["Accept"] = "xml"
        assert request.headers["Accept"] == "json"
        with pytest.raises(TypeError):
            request.headers["Accept"] = "xml"  # type: ignore[index]

    def test_malformed_url_raises_on_key(self):
        with pytest.raises(MalformedURLError):
            FetchRequest(url="not a url").cache_key()


class TestCacheEntry:
    def test_freshness_boundary(self):
        entry = CacheEntry(
            key="k",
            url="https://example.com/",
            status_code=200,
            headers={},
            body=b"",
            stored_at=100.0,
            ttl=10.0,
        )
        assert entry.expires_at == 110.0
        assert entry.is_fresh(110.0)
        assert not entry.is_fresh(110.001)


class TestFetchResult:
    request = FetchRequest(url="https://example.com/")

    def test_success_returns_outcome(self):
        success = Success(
            body=b"hi", status_code=200, headers={}, fetched_at=1.0
        )
        result = FetchResult(self.request, success, attempts=1)
        assert result.ok
        assert result.raise_for_outcome() is success
        assert success.text == "hi"

    def test_transient_failure_raises_transient(self):
        result = FetchResult(
            self.request,
            Failure(kind=FailureKind.SERVER_ERROR, attempts=4),
            attempts=4,
        )
        assert result.failed
        with pytest.raises(TransientNetworkError) as exc_info:
            result.raise_for_outcome()
        assert exc_info.value.kind is FailureKind.SERVER_ERROR

    def test_permanent_failure_raises_permanent(self):
        result = FetchResult(
            self.request,
            Failure(kind=FailureKind.CLIENT_ERROR, attempts=1),
            attempts=1,
        )
        with pytest.raises(PermanentRequestError):
            result.raise_for_outcome()

    def test_cancelled_raises_cancellation(self):
        result = FetchResult(self.request, Cancelled(attempts=0))
        assert result.cancelled
        with pytest.raises(CancellationError) as exc_info:
            result.raise_for_outcome()
        assert not exc_info.value.was_in_flight


class TestRequestState:
    def test_happy_path(self):
        state = RequestState.QUEUED
        for nxt in (
            RequestState.CACHE_CHECK,
            RequestState.RATE_LIMITED,
            RequestState.DISPATCHED,
            RequestState.RETRYING,
            RequestState.RATE_LIMITED,
            RequestState.DISPATCHED,
            RequestState.SUCCEEDED,
        ):
            state.check_transition(nxt)
            state = nxt
        assert state.terminal

    def test_terminal_states_have_no_exits(self):
        for terminal in (
            RequestState.CACHE_HIT,
            RequestState.SUCCEEDED,
            RequestState.FAILED_PERMANENTLY,
            RequestState.CANCELLED,
        ):
            assert terminal.terminal
            for target in RequestState:
                with pytest.raises(InvalidStateTransition):
                    terminal.check_transition(target)

    def test_cannot_skip_rate_limiter(self):
        with pytest.raises(InvalidStateTransition):
            RequestState.CACHE_CHECK.check_transition(RequestState.DISPATCHED)
        with pytest.raises(InvalidStateTransition):
            RequestState.RETRYING.check_transition(RequestState.DISPATCHED)

    def test_every_live_state_can_be_cancelled(self):
        for state in RequestState:
            if not state.terminal:
                state.check_transition(RequestState.CANCELLED)
