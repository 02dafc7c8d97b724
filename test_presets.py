from presets import (
    DEFAULT_MODEL,
    MODEL_OPTIONS,
    STYLES,
    THEMES,
    TRANSLATIONS,
    get_theme,
    is_known_model,
    model_badge,
    translate,
)


def test_four_master_presets():
    assert [s.id for s in STYLES] == ["美式杂志封面", "school", "美术馆迷失的她", "职业肖像照"]
    for style in STYLES:
        assert style.title
        assert style.emoji
        assert len(style.prompt) > 50


def test_style_ids_unique():
    ids = [s.id for s in STYLES]
    assert len(ids) == len(set(ids))


def test_translation_tables_share_keys():
    assert set(TRANSLATIONS["zh"]) == set(TRANSLATIONS["en"])


def test_translate_falls_back():
    assert translate("en", "makeMagic") == "MAKE MAGIC"
    assert translate("zh", "customTitle") == "自定义创作"
    # Unknown language uses the default table
    assert translate("fr", "customTitle") == "自定义创作"
    assert translate("en", "no-such-key") == "no-such-key"


def test_theme_lookup():
    assert set(THEMES) == {"banana", "berry", "mint", "cyber"}
    assert get_theme("mint").id == "mint"
    assert get_theme("unknown").id == "banana"


def test_model_badge():
    assert model_badge("gemini-3-pro-image-preview") == "PRO"
    assert model_badge("gemini-2.5-flash-image") == "FAST"
    assert model_badge("nano-banana") == "FAST"
    assert model_badge("") == "FAST"


def test_known_models():
    assert is_known_model(DEFAULT_MODEL)
    assert all(is_known_model(opt["value"]) for opt in MODEL_OPTIONS)
    assert not is_known_model("dall-e-3")
