import io

from rich.console import Console

from streamnorm.ui.preview import CanonicalPreview, visible_text_from


def test_visible_text_prefers_final_region():
    assert visible_text_from("thinking... <FINAL>Answer</final> trailing") == "Answer"
    assert visible_text_from("no markers here") == "no markers here"
    assert visible_text_from("") == ""


def test_preview_accumulates_canonical_events():
    buffer = io.StringIO()
    console = Console(file=buffer, force_terminal=False, width=60)

    with CanonicalPreview(console, live=False) as preview:
        preview.feed(b'data: {"response":"<final>Hello "}\n\nda')
        preview.feed(b'ta: {"response":"**world**</final>"}\n\n')
        preview.feed(b"data: not-canonical\n\n")

    assert preview.text == "<final>Hello **world**</final>"
    assert preview.visible_text == "Hello **world**"
    assert "Hello" in buffer.getvalue()
