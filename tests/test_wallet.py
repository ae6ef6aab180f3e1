"""
Test suite for idwallet_core.wallet: the in-memory wallet store.

Covers:
  - Wallet.generate() (account 0, encrypted blob, config key)
  - add_account append-only indexing
  - restore_accounts growth and username application
  - get_account bounds
  - forget_secret wiping
"""

import unittest

from idwallet_core.account import derive_account
from idwallet_core.crypto_utils import decrypt_secret
from idwallet_core.errors import AccountNotFound, NotAuthenticated
from idwallet_core.wallet import Wallet

SECRET = bytes(range(32))


class TestWalletGenerate(unittest.TestCase):

    def setUp(self):
        self.wallet = Wallet.generate(SECRET, "pw")

    def test_single_account(self):
        self.assertEqual(len(self.wallet.accounts), 1)
        self.assertEqual(self.wallet.accounts[0], derive_account(SECRET, 0))

    def test_blob_decrypts_to_secret(self):
        self.assertEqual(decrypt_secret(self.wallet.encrypted_secret_key, "pw"), bytearray(SECRET))

    def test_holds_own_copy_of_secret(self):
        source = bytearray(SECRET)
        wallet = Wallet.generate(source, "pw")
        source[0] ^= 0xFF
        self.assertEqual(wallet.secret_key, bytearray(SECRET))

    def test_unlocked(self):
        self.assertTrue(self.wallet.is_unlocked)

    def test_repr_hides_secret(self):
        self.assertNotIn(SECRET.hex(), repr(self.wallet))


class TestWalletAccounts(unittest.TestCase):

    def setUp(self):
        self.wallet = Wallet.generate(SECRET, "pw")

    def test_add_account_appends_next_index(self):
        a1 = self.wallet.add_account()
        a2 = self.wallet.add_account()
        self.assertEqual((a1.index, a2.index), (1, 2))
        self.assertEqual([a.index for a in self.wallet.accounts], [0, 1, 2])

    def test_add_account_requires_secret(self):
        self.wallet.forget_secret()
        with self.assertRaises(NotAuthenticated):
            self.wallet.add_account()

    def test_restore_grows(self):
        self.wallet.restore_accounts(3, {1: "bob.id"})
        self.assertEqual(len(self.wallet.accounts), 3)
        self.assertEqual(self.wallet.accounts[1].username, "bob.id")
        self.assertEqual(self.wallet.accounts[2], derive_account(SECRET, 2))

    def test_restore_never_shrinks(self):
        self.wallet.add_account()
        self.wallet.add_account()
        self.wallet.restore_accounts(1)
        self.assertEqual(len(self.wallet.accounts), 3)

    def test_restore_ignores_out_of_range_usernames(self):
        self.wallet.restore_accounts(1, {5: "ghost.id"})
        self.assertEqual(len(self.wallet.accounts), 1)

    def test_restore_locked_without_growth_is_allowed(self):
        self.wallet.forget_secret()
        self.wallet.restore_accounts(1, {0: "alice.id"})
        self.assertEqual(self.wallet.accounts[0].username, "alice.id")

    def test_restore_locked_growth_rejected(self):
        self.wallet.forget_secret()
        with self.assertRaises(NotAuthenticated):
            self.wallet.restore_accounts(2)

    def test_get_account(self):
        self.assertIs(self.wallet.get_account(0), self.wallet.accounts[0])

    def test_get_account_out_of_range(self):
        with self.assertRaises(AccountNotFound):
            self.wallet.get_account(1)
        with self.assertRaises(AccountNotFound):
            self.wallet.get_account(-1)


class TestForgetSecret(unittest.TestCase):

    def test_buffer_zeroed(self):
        wallet = Wallet.generate(SECRET, "pw")
        buf = wallet.secret_key
        wallet.forget_secret()
        self.assertIsNone(wallet.secret_key)
        self.assertEqual(buf, bytearray(32))
        self.assertFalse(wallet.is_unlocked)

    def test_idempotent(self):
        wallet = Wallet.generate(SECRET, "pw")
        wallet.forget_secret()
        wallet.forget_secret()
        self.assertIsNone(wallet.secret_key)


if __name__ == "__main__":
    unittest.main()
