import json
import os
import tempfile
import unittest
from unittest import mock

import configs
import shared
from shared import (DecryptionError, KeyExchangeError, ReceivedMessageFilter, SessionCipher, complete_key_exchange,
                    compute_shared_secret, decrypt_received_message, derive_session_key, export_public_key,
                    generate_keypair, import_public_key, load_phrase_wordlist, parse_phrase_wordlist,
                    verification_phrase)

# Same length as the EFF large wordlist the relay serves
PHRASE_WORDS = [f"word{i}" for i in range(7776)]


class KeyExchangeTests(unittest.TestCase):
    def setUp(self):
        self.initiator = generate_keypair()
        self.responder = generate_keypair()
        self.initiator_hex = export_public_key(self.initiator.public_key)
        self.responder_hex = export_public_key(self.responder.public_key)

    def test_public_key_encoding(self):
        self.assertEqual(len(self.initiator_hex), 130)
        self.assertTrue(self.initiator_hex.startswith("04"))
        imported = import_public_key(self.initiator_hex)
        self.assertEqual(export_public_key(imported), self.initiator_hex)

    def test_both_sides_derive_the_same_key_and_phrase(self):
        key_a, phrase_a = complete_key_exchange(self.initiator.private_key, self.responder_hex, PHRASE_WORDS)
        key_b, phrase_b = complete_key_exchange(self.responder.private_key, self.initiator_hex, PHRASE_WORDS)
        self.assertEqual(key_a, key_b)
        self.assertEqual(len(key_a), configs.SESSION_KEY_SIZE)
        self.assertEqual(phrase_a, phrase_b)

        words = phrase_a.split(" ")
        self.assertEqual(len(words), configs.VERIFICATION_PHRASE_WORDS)
        for word in words:
            self.assertIn(word, PHRASE_WORDS)

    def test_different_peers_give_different_keys(self):
        other = generate_keypair()
        key_a, _ = complete_key_exchange(self.initiator.private_key, self.responder_hex, PHRASE_WORDS)
        key_c, _ = complete_key_exchange(self.initiator.private_key, export_public_key(other.public_key),
                                         PHRASE_WORDS)
        self.assertNotEqual(key_a, key_c)

    def test_phrase_is_derived_from_the_secret_digest(self):
        # SHA-256("") starts with e3b0 c442 98fc
        wordlist = [f"w{i}" for i in range(7)]
        expected = " ".join(wordlist[chunk % 7] for chunk in (0xe3b0, 0xc442, 0x98fc))
        self.assertEqual(verification_phrase(b"", wordlist), expected)

    def test_phrase_indexes_match_the_browser_client(self):
        # 0xe3b0 % 7776 = 3856, 0xc442 % 7776 = 3586, 0x98fc % 7776 = 284
        self.assertEqual(verification_phrase(b"", PHRASE_WORDS), "word3856 word3586 word284")

    def test_session_key_matches_manual_derivation(self):
        secret = compute_shared_secret(self.initiator.private_key, self.responder.public_key)
        key, _ = complete_key_exchange(self.initiator.private_key, self.responder_hex, PHRASE_WORDS)
        self.assertEqual(derive_session_key(secret), key)

    def test_invalid_peer_keys_are_rejected(self):
        bad_keys = [
            "",
            "not hex at all",
            "04" + "00" * 64,  # not on the curve
            "02" + self.responder_hex[2:66],  # compressed form
            self.responder_hex[:-2],  # truncated
            "05" + self.responder_hex[2:],
        ]
        for bad in bad_keys:
            with self.subTest(bad=bad):
                with self.assertRaises(KeyExchangeError):
                    complete_key_exchange(self.initiator.private_key, bad, PHRASE_WORDS)

    def test_empty_wordlist_fails_the_exchange(self):
        with self.assertRaises(KeyExchangeError):
            complete_key_exchange(self.initiator.private_key, self.responder_hex, [])


class PhraseWordlistTests(unittest.TestCase):
    def setUp(self):
        shared._phrase_wordlist = None
        self.addCleanup(setattr, shared, "_phrase_wordlist", None)
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.path = os.path.join(self.tmp.name, "eff_wordlist.json")

    def test_parse(self):
        self.assertEqual(parse_phrase_wordlist({"eff_wordlist": ["abacus", "abdomen"]}), ["abacus", "abdomen"])
        for bad in ({}, {"eff_wordlist": []}, {"eff_wordlist": ["ok", ""]}, ["abacus"], {"eff_wordlist": "abacus"}):
            with self.subTest(bad=bad):
                with self.assertRaises(ValueError):
                    parse_phrase_wordlist(bad)

    def test_local_copy(self):
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump({"eff_wordlist": PHRASE_WORDS}, f)
        with mock.patch.object(configs, "PHRASE_WORDLIST_FILE", self.path):
            self.assertEqual(load_phrase_wordlist(), PHRASE_WORDS)

    def test_missing_local_copy(self):
        with mock.patch.object(configs, "PHRASE_WORDLIST_FILE", self.path):
            with self.assertRaises(FileNotFoundError):
                load_phrase_wordlist()


class SessionCipherTests(unittest.TestCase):
    def setUp(self):
        key = bytes(range(32))
        self.sender = SessionCipher(key)
        self.receiver = SessionCipher(key)

    def test_text_envelope(self):
        envelope = self.sender.encrypt_text("Hello from the other device")
        self.assertEqual(len(bytes.fromhex(envelope["iv"])), configs.NONCE_SIZE)
        self.assertEqual(len(bytes.fromhex(envelope["authTag"])), configs.TAG_SIZE)
        self.assertEqual(self.receiver.decrypt_text(envelope["ciphertext"], envelope["iv"], envelope["authTag"]),
                         "Hello from the other device")

    def test_tag_may_be_appended_to_the_ciphertext(self):
        envelope = self.sender.encrypt_text("appended")
        joined = envelope["ciphertext"] + envelope["authTag"]
        self.assertEqual(self.receiver.decrypt_text(joined, envelope["iv"]), "appended")

    def test_any_flipped_bit_fails_authentication(self):
        nonce, sealed = self.sender.encrypt(b"attack at dawn")
        for i in range(len(sealed)):
            for bit in (0x01, 0x80):
                tampered = bytearray(sealed)
                tampered[i] ^= bit
                with self.assertRaises(DecryptionError):
                    self.receiver.decrypt(nonce, bytes(tampered))

        tampered_nonce = bytearray(nonce)
        tampered_nonce[0] ^= 0x01
        with self.assertRaises(DecryptionError):
            self.receiver.decrypt(bytes(tampered_nonce), sealed)

    def test_wrong_key_fails(self):
        envelope = self.sender.encrypt_text("secret")
        stranger = SessionCipher(bytes(32))
        with self.assertRaises(DecryptionError):
            stranger.decrypt_text(envelope["ciphertext"], envelope["iv"], envelope["authTag"])

    def test_malformed_fields(self):
        with self.assertRaises(DecryptionError):
            self.receiver.decrypt_text("zz", "00" * 12, "00" * 16)
        with self.assertRaises(DecryptionError):
            self.receiver.decrypt(b"short", b"\x00" * 32)
        with self.assertRaises(DecryptionError):
            self.receiver.decrypt(b"\x00" * 12, b"\x00" * 4)

    def test_nonces_are_never_reused(self):
        nonces = {self.sender.encrypt(b"x")[0] for _ in range(2000)}
        self.assertEqual(len(nonces), 2000)

    def test_encryption_keeps_no_per_message_state(self):
        before = dict(vars(self.sender))
        for _ in range(500):
            self.sender.encrypt_text("x")
        self.assertEqual(vars(self.sender), before)

    def test_encrypted_file(self):
        data = b"\x00\x01binary file contents" * 100
        encrypted = self.sender.encrypt_file("holiday photo.jpg", data)

        self.assertTrue(encrypted["filename"].startswith("encrypted_"))
        self.assertNotIn("holiday", encrypted["filename"])
        self.assertEqual(encrypted["size"], len(data))
        self.assertNotEqual(encrypted["iv"], encrypted["nameIv"])
        self.assertEqual(self.receiver.decrypt_file(encrypted["blob"], encrypted["iv"]), data)
        self.assertEqual(self.receiver.decrypt_text(encrypted["encryptedName"], encrypted["nameIv"]),
                         "holiday photo.jpg")


class ReceivedMessageTests(unittest.TestCase):
    def setUp(self):
        self.cipher = SessionCipher(bytes(range(32)))

    def _text_message(self, text, timestamp):
        envelope = self.cipher.encrypt_text(text)
        return {"type": "text", "timestamp": timestamp, **envelope}

    def test_filter_drops_seen_and_unidentified_messages(self):
        message_filter = ReceivedMessageFilter()
        first = [{"timestamp": 1}, {"timestamp": 2}, {"text": "no id"}]
        self.assertEqual(message_filter.filter_new(first), [{"timestamp": 1}, {"timestamp": 2}])
        self.assertEqual(message_filter.filter_new(first + [{"timestamp": 3}]), [{"timestamp": 3}])
        self.assertIn(2, message_filter)
        self.assertEqual(len(message_filter), 3)

    def test_decrypt_text_message(self):
        record = decrypt_received_message(self.cipher, self._text_message("hi", 10))
        self.assertEqual(record["text"], "hi")
        self.assertTrue(record["decrypted"])
        self.assertEqual(record["timestamp"], 10)

    def test_undecryptable_text_gets_placeholder(self):
        message = SessionCipher(bytes(32)).encrypt_text("not for you")
        record = decrypt_received_message(self.cipher, {"type": "text", "timestamp": 11, **message})
        self.assertEqual(record["text"], configs.UNDECRYPTABLE_PLACEHOLDER)
        self.assertFalse(record["decrypted"])

    def test_file_names_are_decrypted_independently(self):
        good = self.cipher.encrypt_file("report.pdf", b"pdf")
        bad = SessionCipher(bytes(32)).encrypt_file("other.txt", b"txt")
        message = {
            "type":      "files",
            "timestamp": 12,
            "files":     [
                {"filename": good["filename"], "encryptedName": good["encryptedName"], "nameIv": good["nameIv"],
                 "iv": good["iv"], "size": 3},
                {"filename": bad["filename"], "encryptedName": bad["encryptedName"], "nameIv": bad["nameIv"],
                 "iv": bad["iv"], "size": "3"},
            ],
        }
        record = decrypt_received_message(self.cipher, message)
        self.assertEqual(record["files"][0]["name"], "report.pdf")
        self.assertEqual(record["files"][0]["iv"], good["iv"])
        self.assertEqual(record["files"][1]["name"], configs.UNDECRYPTABLE_PLACEHOLDER)
        self.assertEqual(record["files"][1]["size"], 3)
        self.assertFalse(record["decrypted"])


if __name__ == '__main__':
    unittest.main()
