from __future__ import annotations

import contextlib
import io
import json
import os
from pathlib import Path
import sys
import tempfile
import unittest
from unittest import mock

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from polyswap_listener.main import build_parser, cli
from polyswap_listener.models import BlockRange
from polyswap_listener.storage import Storage
from tests.helpers import BUY_TOKEN, EXTERNAL_REF, HANDLER, OWNER, SELL_TOKEN


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = str(Path(self._tmp.name) / "listener.db")
        env = {
            "BOT_DB_PATH": self.db_path,
            "POLYSWAP_HANDLER": HANDLER,
            "RPC_URL": "",
            "POLY_PRIVATE_KEY": "",
            "PRIVATE_KEY": "",
        }
        self._env = mock.patch.dict(os.environ, env)
        self._env.start()

    def tearDown(self) -> None:
        self._env.stop()
        self._tmp.cleanup()

    def _run(self, *argv: str) -> tuple[int, str]:
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = cli(list(argv))
        return code, out.getvalue()

    def test_parser_wires_subcommands(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["cancel-tx", "--order-hash", "0x" + "11" * 32, "--owner", OWNER, "--batch"])
        self.assertTrue(args.batch)
        self.assertTrue(callable(args.func))
        args = parser.parse_args(["replay-range", "--from-block", "10", "--to-block", "20"])
        self.assertEqual((args.from_block, args.to_block), (10, 20))
        with contextlib.redirect_stderr(io.StringIO()), self.assertRaises(SystemExit):
            parser.parse_args([])

    def test_status_reports_cursor_and_ledger(self) -> None:
        storage = Storage(self.db_path)
        storage.set_processed_block(1234)
        storage.record_range_failure(BlockRange(1235, 1334), "eth_getLogs failed", 5)
        storage.close()

        code, output = self._run("status")
        self.assertEqual(code, 0)
        payload = json.loads(output)
        self.assertEqual(payload["cursor"], 1234)
        self.assertEqual(payload["orders"]["live"], 0)
        self.assertEqual(payload["failed_ranges"][0]["from_block"], 1235)
        self.assertEqual(payload["sold_positions"], 0)

    def test_create_draft_then_status(self) -> None:
        code, output = self._run(
            "create-draft",
            "--owner", OWNER,
            "--sell-token", SELL_TOKEN,
            "--buy-token", BUY_TOKEN,
            "--sell-amount", "1000000",
            "--min-buy-amount", "5",
            "--start-time", "1700000000",
            "--end-time", "1701000000",
            "--polymarket-order-hash", EXTERNAL_REF,
            "--market-id", "m-1",
        )
        self.assertEqual(code, 0)
        draft = json.loads(output)
        self.assertEqual(draft["status"], "draft")
        self.assertEqual(draft["market_id"], "m-1")

        code, output = self._run("status")
        self.assertEqual(json.loads(output)["orders"]["draft"], 1)

    def test_create_tx_for_unknown_order_fails(self) -> None:
        code, _output = self._run("create-tx", "--order-id", "99")
        self.assertEqual(code, 2)

    def test_chain_commands_require_rpc_url(self) -> None:
        code, _output = self._run("backfill")
        self.assertEqual(code, 2)

    def test_unexpected_error_in_command_exits_with_code_two(self) -> None:
        with mock.patch.object(Storage, "status_counts", side_effect=KeyError("status")):
            code, output = self._run("status")
        self.assertEqual(code, 2)
        self.assertEqual(output, "")


if __name__ == "__main__":
    unittest.main()
