from latchkey.service.signature import ADJECTIVES, ADVERBS, ANIMALS, generate_signature


def test_word_lists_have_fifteen_unique_entries():
    for words in (ADVERBS, ADJECTIVES, ANIMALS):
        assert len(words) == 15
        assert len(set(words)) == 15


def test_signature_is_adverb_adjective_animal():
    for _ in range(50):
        adverb, adjective, animal = generate_signature().split(" ")
        assert adverb in ADVERBS
        assert adjective in ADJECTIVES
        assert animal in ANIMALS


def test_signatures_vary():
    assert len({generate_signature() for _ in range(200)}) > 1
