"""
Tests for the product catalog, FAQ matching and text helpers.
"""

import pytest

from giftbot.products import (
    PRODUCTS,
    READY_PROMPT,
    detect_product,
    extract_code,
    find_chat_response,
    find_question_response,
    get_product,
)
from giftbot.utils import chunk_text, extract_resource_id, message_hash, normalize_text, verify_application_id


class TestDetectProduct:
    @pytest.mark.parametrize("title,key", [
        ("Gift Card Roblox 400 Robux Digital", "roblox-400"),
        ("Tarjeta Roblox 800 Robux - Entrega Inmediata", "roblox-800"),
        ("Gift Card Roblox 10 USD Dolares", "roblox-10"),
        ("Steam Wallet 5 USD Argentina", "steam-5"),
        ("Gift Card STEAM 10 USD", "steam-10"),
    ])
    def test_known_titles(self, title, key):
        assert detect_product(title).key == key

    def test_single_keyword_is_not_enough(self):
        assert detect_product("Remera Roblox") is None
        assert detect_product("Auriculares Bluetooth") is None
        assert detect_product("") is None

    def test_numbers_match_whole_words(self):
        # "4000" must not count as "400"
        assert detect_product("Roblox 4000 puntos") is None

    def test_get_product(self):
        assert get_product("steam-5").label == "Steam 5 USD"
        assert get_product("nope") is None
        assert get_product(None) is None

    def test_every_product_ends_with_ready_prompt(self):
        for product in PRODUCTS:
            assert product.instructions[-1] == READY_PROMPT


class TestCodeMessage:
    def test_code_roundtrip_through_template(self):
        message = get_product("roblox-400").code_message("ABCD-1234")
        assert "Tu codigo: *ABCD-1234*" in message
        assert extract_code(message) == "ABCD-1234"

    def test_extract_code_missing(self):
        assert extract_code("Gracias por tu compra") is None
        assert extract_code(None) is None


class TestQuestionFaq:
    def test_delivery_time_question(self):
        answer = find_question_response("cuanto tarda en llegar?", "Gift Card Roblox 400 Robux")
        assert answer is not None
        assert "instantanea" in answer

    def test_product_hint_required(self):
        question = "cuantos robux trae?"
        assert "Robux" in find_question_response(question, "Gift Card Roblox 400 Robux")
        assert find_question_response(question, "Steam 5 USD") is None

    def test_unknown_question(self):
        assert find_question_response("que opinas del clima?", "Gift Card Roblox") is None

    def test_chat_faq(self):
        assert "navegador" in find_chat_response("lo puedo canjear desde la app?")
        assert find_chat_response("hola") is None


class TestUtils:
    def test_normalize(self):
        assert normalize_text("  Código   LISTO  ") == "codigo listo"
        assert normalize_text(None) == ""

    def test_message_hash_depends_on_key_and_text(self):
        assert message_hash("m1", "Listo") == message_hash("m1", "listo ")
        assert message_hash("m1", "listo") != message_hash("m2", "listo")
        assert message_hash("m1", "listo") != message_hash("m1", "dale")

    def test_chunk_text_respects_limit(self):
        text = "\n\n".join(["palabra " * 30] * 4)
        chunks = chunk_text(text, 100)
        assert all(len(chunk) <= 100 for chunk in chunks)
        assert " ".join(chunks).split() == text.split()

    def test_chunk_text_short_and_empty(self):
        assert chunk_text("hola", 350) == ["hola"]
        assert chunk_text("   ", 350) == []

    def test_chunk_text_long_word(self):
        assert chunk_text("x" * 25, 10) == ["x" * 10, "x" * 10, "x" * 5]

    def test_extract_resource_id(self):
        assert extract_resource_id("/orders/2000003508") == "2000003508"
        assert extract_resource_id("/questions/123", prefix="/questions/") == "123"
        assert extract_resource_id("456") == "456"

    def test_verify_application_id(self):
        assert verify_application_id("123", "123") is True
        assert verify_application_id(123, "123") is True
        assert verify_application_id("999", "123") is False
        assert verify_application_id(None, "123") is True
        assert verify_application_id("999", None) is True
