from utils import clean_html_to_markdown


def test_clean_html_resolves_relative_urls_with_base():
    html = '<p><a href="details.html">Read more</a><img src="../img/photo.png" alt="Photo"/></p>'
    markdown = clean_html_to_markdown(html, base_url="https://example.com/articles/2025/")

    assert "[Read more](https://example.com/articles/2025/details.html)" in markdown
    assert "https://example.com/articles/img/photo.png" in markdown


def test_clean_html_relative_urls_without_base_neutralized():
    html = '<p><a href="details.html">Read more</a><img src="img/photo.png" alt="Photo"/></p>'
    markdown = clean_html_to_markdown(html)

    assert "[Read more](#)" in markdown
    assert "img/photo.png" not in markdown


def test_clean_html_drops_scripts_and_tracking_pixels():
    html = (
        '<p onclick="steal()">Hello <b>world</b></p>'
        '<script>alert(1)</script>'
        '<img src="https://stats.example.com/pixel.gif" width="1" height="1"/>'
        '<a href="javascript:alert(1)">bad</a>'
    )
    markdown = clean_html_to_markdown(html, base_url="https://example.com/")

    assert "**world**" in markdown
    assert "alert" not in markdown
    assert "pixel.gif" not in markdown
    assert "steal" not in markdown


def test_clean_html_empty_input():
    assert clean_html_to_markdown("") == ""
