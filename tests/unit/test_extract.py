from chatforge.extract import extract_urls


def test_extract_preserves_order():
    assert extract_urls("see http://b.com and http://a.com") == [
        "http://b.com",
        "http://a.com",
    ]


def test_extract_keeps_duplicates():
    text = "https://x.io/a then https://x.io/a again"
    assert extract_urls(text) == ["https://x.io/a", "https://x.io/a"]


def test_extract_stops_at_whitespace():
    text = "first https://a.com/path?q=1\nsecond\thttp://b.org/x, done"
    assert extract_urls(text) == ["https://a.com/path?q=1", "http://b.org/x,"]


def test_extract_no_urls():
    assert extract_urls("hello there") == []
    assert extract_urls("") == []
    assert extract_urls("ftp://example.com and www.example.com") == []
