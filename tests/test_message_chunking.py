from app.services.message_chunking_service import split_into_bubbles


def test_short_text_is_a_single_bubble():
    assert split_into_bubbles("Hello there") == ["Hello there"]
    assert split_into_bubbles("   ") == []


def test_paragraphs_are_preferred_boundaries():
    text = "First paragraph here.\n\nSecond paragraph here."
    assert split_into_bubbles(text, max_chars=25) == ["First paragraph here.", "Second paragraph here."]


def test_small_paragraphs_are_packed_together():
    text = "One.\n\nTwo.\n\nThree."
    assert split_into_bubbles(text, max_chars=12) == ["One.\n\nTwo.", "Three."]


def test_long_word_is_hard_cut():
    bubbles = split_into_bubbles("a" * 25, max_chars=10, max_bubbles=5)
    assert bubbles == ["a" * 10, "a" * 10, "a" * 5]


def test_overflow_is_merged_into_last_bubble():
    text = "One two. Three four. Five six. Seven eight."
    bubbles = split_into_bubbles(text, max_chars=10, max_bubbles=2)
    assert len(bubbles) == 2
    assert bubbles[0] == "One two."
    assert bubbles[1] == "Three\nfour.\nFive six.\nSeven\neight."
