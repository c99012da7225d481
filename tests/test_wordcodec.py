import unittest
from unittest import mock

import configs
import wordcodec
from shared import CodecError, InvalidParityError, UnknownWordError
from wordcodec import decode_connection_code, encode_connection_code


class WordCodecTests(unittest.TestCase):
    def test_decode_pgp_words(self):
        self.assertEqual(decode_connection_code("pegasus atlas sandalwood choking"), "AB12CD34")

    def test_decode_accepts_hyphens_and_mixed_case(self):
        self.assertEqual(decode_connection_code("  Pegasus-ATLAS  sandalwood-choking "), "AB12CD34")

    def test_single_token_is_the_code_itself(self):
        self.assertEqual(decode_connection_code("ab12cd34"), "AB12CD34")
        self.assertEqual(decode_connection_code("  ab12cd34\n"), "AB12CD34")

    def test_empty_input(self):
        self.assertEqual(decode_connection_code(""), "")
        self.assertEqual(decode_connection_code("   "), "")

    def test_unknown_word_reports_position(self):
        with self.assertRaises(UnknownWordError) as ctx:
            decode_connection_code("pegasus atlas notaword choking")
        self.assertEqual(ctx.exception.position, 2)
        self.assertEqual(ctx.exception.word, "notaword")
        self.assertIn("position 2", str(ctx.exception))

    def test_wrong_parity_word_is_rejected(self):
        # "adroitness" is the odd word of byte 0x00, which is even
        with self.assertRaises(InvalidParityError) as ctx:
            decode_connection_code("adroitness aardvark")
        self.assertEqual(ctx.exception.position, 0)
        self.assertTrue(ctx.exception.odd)

        # "rhythm" is the even word of 0xAB, which is odd
        with self.assertRaises(InvalidParityError) as ctx:
            decode_connection_code("atlas rhythm")
        self.assertEqual(ctx.exception.position, 1)
        self.assertFalse(ctx.exception.odd)

    def test_codec_errors_share_a_base_class(self):
        with self.assertRaises(CodecError):
            decode_connection_code("aardvark notaword")

    def test_encode(self):
        self.assertEqual(encode_connection_code("AB12CD34"), "pegasus atlas sandalwood choking")
        self.assertEqual(encode_connection_code("ab12", separator="-"), "pegasus-atlas")
        self.assertEqual(decode_connection_code(encode_connection_code("00FF7E81")), "00FF7E81")

    def test_encode_rejects_non_hex(self):
        with self.assertRaises(CodecError):
            encode_connection_code("XYZ")

    def test_every_byte_has_a_distinct_word_pair(self):
        wordlist = wordcodec.load_pgp_wordlist()
        self.assertEqual(len(wordlist), 256)
        words = [w.lower() for pair in wordlist.values() for w in pair]
        self.assertEqual(len(words), len(set(words)))


class WordlistLoadingTests(unittest.TestCase):
    def setUp(self):
        wordcodec._pgp_wordlist = None
        wordcodec._pgp_index = None

    def tearDown(self):
        wordcodec._pgp_wordlist = None
        wordcodec._pgp_index = None

    def test_missing_wordlist_raises_codec_error(self):
        with mock.patch.object(configs, "PGP_WORDLIST_FILE", "does_not_exist.json"):
            with self.assertRaises(CodecError) as ctx:
                decode_connection_code("pegasus atlas")
        self.assertEqual(str(ctx.exception), "Failed to load PGP wordlist")

    def test_missing_wordlist_does_not_affect_raw_codes(self):
        with mock.patch.object(configs, "PGP_WORDLIST_FILE", "does_not_exist.json"):
            self.assertEqual(decode_connection_code("ab12cd34"), "AB12CD34")

    def test_malformed_wordlist_falls_back_to_raw_input(self):
        wordcodec._pgp_wordlist = {"00": ["only-one-word"]}
        self.assertEqual(decode_connection_code("pegasus atlas"), "PEGASUS ATLAS")
        self.assertIsNone(wordcodec._pgp_index)

    def test_word_index_is_built_once(self):
        with mock.patch.object(wordcodec, "_build_index", wraps=wordcodec._build_index) as build_index:
            decode_connection_code("pegasus atlas")
            decode_connection_code("sandalwood choking")
        self.assertEqual(build_index.call_count, 1)


if __name__ == '__main__':
    unittest.main()
