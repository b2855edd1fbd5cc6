"""Tests for tag extraction."""

from outline_vault.core.tags.extractor import (
    compute_tags,
    extract_tags_from_nodes,
    extract_tags_from_string,
    parse_tags_field,
)


def test_extract_tags_lowercases_and_dedups() -> None:
    assert extract_tags_from_string("Ship #Release, then #release and #v2-beta") == [
        "release",
        "v2-beta",
    ]


def test_extract_tags_ignores_embedded_hashes() -> None:
    text = "a#b http://example.com/#anchor #_private"
    assert extract_tags_from_string(text) == []


def test_extract_tags_from_nodes_reads_text_leaves() -> None:
    nodes = [
        {
            "type": "paragraph",
            "content": [
                {"type": "text", "text": "see #docs"},
                {"type": "image", "attrs": {"alt": "#notatag"}},
            ],
        }
    ]
    assert extract_tags_from_nodes(nodes) == ["docs"]


def test_compute_tags_merges_title_and_html_content() -> None:
    html = '<p>#alpha</p><span class="x">#Beta</span>'
    assert compute_tags("Plan #gamma", html) == ("alpha", "beta", "gamma")


def test_compute_tags_parses_serialized_rich_text() -> None:
    content = '[{"type":"paragraph","content":[{"type":"text","text":"read #docs"}]}]'
    assert compute_tags("", content) == ("docs",)


def test_compute_tags_handles_empty_content() -> None:
    assert compute_tags("No tags here", None) == ()
    assert compute_tags("#solo", "") == ("solo",)


def test_parse_tags_field() -> None:
    assert parse_tags_field('["b", "A", "b"]') == ("a", "b")
    assert parse_tags_field("not json") == ()
    assert parse_tags_field(None) == ()


def test_compute_tags_ignores_attribute_text() -> None:
    html = '<p><img alt="a > b #secret" src="/files/1/x.png"> plain text</p>'
    assert compute_tags("Title", html) == ()


def test_compute_tags_decodes_entities() -> None:
    assert compute_tags("Title", "<p>&#35;work item</p>") == ("work",)
    assert compute_tags("", "<p>R&amp;D #lab</p><script>var x = '#hidden'</script>") == ("lab",)
