import pytest

from wso2auth.service.errors import RedirectSafetyError
from wso2auth.service.redirects import SecureRedirectDispatcher, is_internal_path, normalize_domain


@pytest.fixture
def dispatcher():
    return SecureRedirectDispatcher(
        "https://www.comune.test", ["trusted.org", "https://Portal.Example.com/path", "not a domain"]
    )


class TestResolve:
    def test_internal_path_becomes_absolute(self, dispatcher):
        """Paths with a single leading slash are internal."""
        assert dispatcher.resolve("/a/b", "/") == "https://www.comune.test/a/b"

    def test_internal_path_keeps_query(self, dispatcher):
        assert dispatcher.resolve("/a?x=1", "/") == "https://www.comune.test/a?x=1"

    @pytest.mark.parametrize(
        "destination, expected",
        [
            ("/http:evil.test/x", "https://www.comune.test/http:evil.test/x"),
            ("/a:b", "https://www.comune.test/a:b"),
            ("/servizi/a:b", "https://www.comune.test/servizi/a:b"),
        ],
    )
    def test_colon_in_path_stays_on_site(self, dispatcher, destination, expected):
        assert dispatcher.resolve(destination, "/") == expected

    def test_base_url_with_subdirectory(self):
        dispatcher = SecureRedirectDispatcher("https://www.comune.test/portale/", [])
        assert dispatcher.resolve("/servizi", "/") == "https://www.comune.test/portale/servizi"
        assert dispatcher.resolve(None, "/") == "https://www.comune.test/portale/"

    def test_untrusted_host_falls_back(self, dispatcher):
        """Hosts outside the whitelist are replaced by the fallback."""
        assert dispatcher.resolve("https://evil.test/x", "/") == "https://www.comune.test/"

    def test_whitelisted_subdomain_is_verbatim(self, dispatcher):
        url = "https://sub.trusted.org/x?y=1"
        assert dispatcher.resolve(url, "/") == url

    def test_whitelisted_exact_host(self, dispatcher):
        assert dispatcher.resolve("http://trusted.org", "/") == "http://trusted.org"

    def test_suffix_without_dot_is_rejected(self, dispatcher):
        """``eviltrusted.org`` does not match ``trusted.org``."""
        assert dispatcher.resolve("https://eviltrusted.org/", "/") == "https://www.comune.test/"

    def test_whitelist_entry_with_scheme_and_path(self, dispatcher):
        assert dispatcher.whitelist == ["trusted.org", "portal.example.com"]
        url = "https://portal.example.com/servizi"
        assert dispatcher.resolve(url, "/") == url

    @pytest.mark.parametrize(
        "destination",
        [
            "//evil.test/x",
            "/\\evil.test",
            "javascript:alert(1)",
            "ftp://trusted.org/file",
            "https://[::1",
            "not a url",
        ],
    )
    def test_unsafe_or_malformed_falls_back(self, dispatcher, destination):
        assert dispatcher.resolve(destination, "/home") == "https://www.comune.test/home"

    def test_empty_destination_uses_fallback(self, dispatcher):
        assert dispatcher.resolve(None, "/") == "https://www.comune.test/"
        assert dispatcher.resolve("", "/") == "https://www.comune.test/"

    def test_check_raises(self, dispatcher):
        with pytest.raises(RedirectSafetyError) as excinfo:
            dispatcher.check("https://evil.test/")
        assert excinfo.value.detail == {"host": "evil.test"}

    def test_empty_whitelist_rejects_all_external(self):
        dispatcher = SecureRedirectDispatcher("https://site.test/", [])
        assert dispatcher.resolve("https://trusted.org/", "/") == "https://site.test/"


def test_normalize_domain():
    assert normalize_domain(" HTTPS://Trusted.Org/path ") == "trusted.org"
    assert normalize_domain("trusted.org:8443") == "trusted.org"
    assert normalize_domain("") is None
    assert normalize_domain("bad domain") is None


def test_is_internal_path():
    assert is_internal_path("/ok")
    assert not is_internal_path("//host")
    assert not is_internal_path("/a\nb")
    assert not is_internal_path("relative")
