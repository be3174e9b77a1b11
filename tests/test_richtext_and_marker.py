import unittest

from bugsync.services.providers.richtext import adf_to_text, html_to_text, text_to_adf, text_to_html
from bugsync.services.sync_marker import append_marker, build_marker, parse_marker, strip_marker


class AdfTests(unittest.TestCase):
    def test_wraps_paragraphs_and_line_breaks(self):
        doc = text_to_adf("Line one\nLine two\n\nSecond paragraph")
        self.assertEqual(doc["type"], "doc")
        self.assertEqual(doc["version"], 1)
        self.assertEqual(len(doc["content"]), 2)
        first = doc["content"][0]["content"]
        self.assertEqual([n["type"] for n in first], ["text", "hardBreak", "text"])

    def test_flatten_preserves_text(self):
        text = "Line one\nLine two\n\nSecond paragraph"
        self.assertEqual(adf_to_text(text_to_adf(text)), text)

    def test_flatten_handles_lists_and_plain_strings(self):
        doc = {
            "type": "doc",
            "version": 1,
            "content": [
                {"type": "paragraph", "content": [{"type": "text", "text": "Steps:"}]},
                {
                    "type": "bulletList",
                    "content": [
                        {"type": "listItem", "content": [{"type": "paragraph", "content": [{"type": "text", "text": "open"}]}]},
                    ],
                },
            ],
        }
        self.assertEqual(adf_to_text(doc), "Steps:\n\n- open")
        self.assertEqual(adf_to_text("legacy"), "legacy")
        self.assertEqual(adf_to_text(None), "")

    def test_empty_text_gives_empty_doc(self):
        self.assertEqual(text_to_adf("")["content"], [])


class HtmlTests(unittest.TestCase):
    def test_escapes_and_breaks(self):
        self.assertEqual(text_to_html("a < b\nc & d"), "a &lt; b<br>c &amp; d")

    def test_strip_to_text(self):
        self.assertEqual(html_to_text("<div>a &lt; b<br/>c</div><p>next</p>"), "a < b\nc\n\nnext")
        self.assertEqual(html_to_text(None), "")


class SyncMarkerTests(unittest.TestCase):
    def test_marker_round_trip(self):
        marker = build_marker(tenant_id="t1", bug_id="bug-9")
        description = append_marker("Crash on save", marker)
        self.assertTrue(description.startswith("Crash on save"))
        self.assertEqual(parse_marker(description), {"tenant_id": "t1", "bug_id": "bug-9"})
        self.assertEqual(strip_marker(description), "Crash on save")

    def test_append_is_idempotent(self):
        marker = build_marker(tenant_id="t1", bug_id="bug-9")
        once = append_marker("Body", marker)
        self.assertEqual(append_marker(once, marker), once)

    def test_marker_only_description(self):
        marker = build_marker(tenant_id="t1", bug_id="bug-9")
        self.assertEqual(append_marker(None, marker), marker)
        self.assertEqual(strip_marker(marker), "")

    def test_garbage_is_ignored(self):
        self.assertIsNone(parse_marker("bugsync-ref:!!!"))
        self.assertIsNone(parse_marker("no marker here"))
        self.assertIsNone(parse_marker(None))

    def test_marker_survives_html_round_trip(self):
        marker = build_marker(tenant_id="t1", bug_id="bug-9")
        html = text_to_html(append_marker("Body", marker))
        self.assertEqual(parse_marker(html_to_text(html)), {"tenant_id": "t1", "bug_id": "bug-9"})

    def test_marker_survives_adf_round_trip(self):
        marker = build_marker(tenant_id="t1", bug_id="bug-9")
        text = append_marker("Body\nmore", marker)
        self.assertEqual(strip_marker(adf_to_text(text_to_adf(text))), "Body\nmore")
