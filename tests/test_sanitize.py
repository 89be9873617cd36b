from mail_driver.sanitize import decode_entities, sanitize_html, text_to_html


def test_script_elements_are_removed_with_content():
    html = '<p>Hello</p><script>alert("x")</script><style>p{}</style>'
    assert sanitize_html(html) == "<p>Hello</p>"


def test_event_handlers_and_unknown_attributes_are_dropped():
    clean = sanitize_html('<p onclick="steal()" data-x="1" style="color: red">Hi</p>')
    assert clean == '<p style="color: red">Hi</p>'


def test_javascript_urls_are_dropped():
    clean = sanitize_html('<a href="javascript:alert(1)">x</a><a href="https://example.com">y</a>')
    assert "javascript" not in clean
    assert '<a href="https://example.com">y</a>' in clean


def test_unknown_tags_keep_their_text():
    assert sanitize_html("<custom><b>bold</b> text</custom>") == "<b>bold</b> text"


def test_blank_target_links_get_noopener():
    clean = sanitize_html('<a href="https://example.com" target="_blank">x</a>')
    assert 'rel="noopener noreferrer"' in clean


def test_unsafe_inline_styles_are_dropped():
    clean = sanitize_html('<div style="width: expression(alert(1))">x</div>')
    assert clean == "<div>x</div>"


def test_inline_images_are_allowed():
    clean = sanitize_html('<img src="cid:logo@example" alt="logo">')
    assert 'src="cid:logo@example"' in clean


def test_empty_body():
    assert sanitize_html("") == ""


def test_decode_entities():
    assert decode_entities("  Tom &amp; Jerry&#39;s  ") == "Tom & Jerry's"
    assert decode_entities(None) == ""


def test_text_to_html_converts_newlines():
    assert text_to_html("line one\nline <two>\r\nthree") == "line one<br>line &lt;two&gt;<br>three"
