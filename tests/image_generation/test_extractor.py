"""Tests for image URL extraction from chat replies."""
from app.services.image_generation.extractor import (
    clean_url,
    extract_any_url,
    extract_image_url,
    is_valid_image_url,
)


class TestExtractImageUrl:
    def test_markdown_image(self):
        result = extract_image_url("好的，这是生成的图片：![alt](https://x/y.png)")

        assert result.url == "https://x/y.png"
        assert result.pattern == "markdown"

    def test_fenced_json(self):
        text = '生成完成\n```json\n{"image_url": "https://cdn.tu-zi.com/a/b.webp", "size": "1024x1024"}\n```'
        result = extract_image_url(text)

        assert result.url == "https://cdn.tu-zi.com/a/b.webp"
        assert result.pattern == "fenced_json"

    def test_json_wins_over_markdown(self):
        text = '{"url": "https://files.test/json.png"} 另见 ![preview](https://files.test/md.png)'
        result = extract_image_url(text)

        assert result.url == "https://files.test/json.png"
        assert result.pattern == "inline_json"

    def test_nested_json_deep_search(self):
        text = '{"data": [{"meta": {"href": "https://files.test/images/nested.jpg"}}]}'

        assert extract_image_url(text).url == "https://files.test/images/nested.jpg"

    def test_bare_link_with_extension(self):
        result = extract_image_url("Here you go: https://files.test/out/final.JPEG?sig=abc.")

        assert result.url == "https://files.test/out/final.JPEG?sig=abc"
        assert result.pattern == "extension"

    def test_keyword_link_without_extension(self):
        result = extract_image_url("图片链接：https://files.test/render/12345")

        assert result.url == "https://files.test/render/12345"
        assert result.pattern == "keyword"

    def test_placeholder_rejected(self):
        assert extract_image_url("![x](https://via.placeholder.com/512.png)") is None
        assert extract_image_url("![x](https://example.com/image.png)") is None

    def test_empty_text(self):
        assert extract_image_url("") is None
        assert extract_image_url(None) is None

    def test_plain_text_has_no_image(self):
        assert extract_image_url("图片正在生成中，请稍候") is None


class TestHelpers:
    def test_clean_url_strips_trailing_punctuation(self):
        assert clean_url(" https://files.test/a.png). ") == "https://files.test/a.png"

    def test_is_valid_image_url(self):
        assert is_valid_image_url("https://files.test/a.png") is True
        assert is_valid_image_url("ftp://files.test/a.png") is False
        assert is_valid_image_url("https://") is False
        assert is_valid_image_url("https://placehold.co/600x400") is False
        assert is_valid_image_url(None) is False

    def test_extract_any_url_takes_first_valid_link(self):
        text = "see https://example.com/doc and then https://files.test/result/42"
        result = extract_any_url(text)

        assert result.url == "https://files.test/result/42"
        assert result.pattern == "any_url"
