import tempfile
import unittest
from pathlib import Path

from realty_agent.realty_core import db


class DatabaseTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tempdir = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tempdir.name) / "nested" / "test_realty_agent.db"
        db.init_db(self.db_path)
        self.conn = db.get_connection(self.db_path)

    def tearDown(self) -> None:
        self.conn.close()
        self.tempdir.cleanup()

    def test_init_db_creates_required_tables(self) -> None:
        cursor = self.conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        table_names = {row["name"] for row in cursor.fetchall()}
        self.assertTrue({"kv_store", "messages", "leads", "bookings", "processed_messages"}.issubset(table_names))

    def test_init_db_is_idempotent(self) -> None:
        db.init_db(self.db_path)
        db.init_db(self.db_path)

    def test_kv_roundtrip_respects_expiry(self) -> None:
        db.kv_set(self.conn, "conv:telegram:1", {"step": "book_name"}, ttl_seconds=60, now=1000.0)
        self.assertEqual(db.kv_get(self.conn, "conv:telegram:1", now=1030.0), {"step": "book_name"})
        self.assertIsNone(db.kv_get(self.conn, "conv:telegram:1", now=1061.0))

        db.kv_set(self.conn, "conv:telegram:2", {"step": "idle"}, now=1000.0)
        self.assertEqual(db.purge_expired_kv(self.conn, now=2000.0), 1)
        self.assertEqual(db.kv_get(self.conn, "conv:telegram:2", now=10_000_000.0), {"step": "idle"})

    def test_kv_set_overwrites(self) -> None:
        db.kv_set(self.conn, "k", {"v": 1})
        db.kv_set(self.conn, "k", {"v": 2})
        self.assertEqual(db.kv_get(self.conn, "k"), {"v": 2})

    def test_claim_message_id_is_once_per_channel(self) -> None:
        self.assertTrue(db.claim_message_id(self.conn, "whatsapp", "wamid.1"))
        self.assertFalse(db.claim_message_id(self.conn, "whatsapp", "wamid.1"))
        self.assertTrue(db.claim_message_id(self.conn, "twilio", "wamid.1"))

    def test_purge_processed_messages_keeps_recent_ids(self) -> None:
        db.claim_message_id(self.conn, "telegram", "1")
        self.conn.execute(
            "INSERT INTO processed_messages (channel, message_id, created_at) VALUES (?, ?, datetime('now', '-30 days'))",
            ("telegram", "old"),
        )
        self.conn.commit()
        self.assertEqual(db.purge_processed_messages(self.conn, older_than_days=7), 1)
        self.assertFalse(db.claim_message_id(self.conn, "telegram", "1"))

    def test_messages_are_listed_chronologically(self) -> None:
        for index in range(5):
            direction = "inbound" if index % 2 == 0 else "outbound"
            db.log_message(self.conn, "telegram", "42", direction, f"m{index}", meta={"n": index})
        db.log_message(self.conn, "telegram", "7", "inbound", "other user")

        recent = db.list_recent_messages(self.conn, "telegram", "42", limit=3)
        self.assertEqual([item["text"] for item in recent], ["m2", "m3", "m4"])
        self.assertEqual(recent[-1]["meta"], {"n": 4})

        inbound = db.list_inbound_messages(self.conn, "telegram", "42")
        self.assertEqual([item["text"] for item in inbound], ["m0", "m2", "m4"])

        latest = db.list_inbound_messages(self.conn, "telegram", "42", limit=2)
        self.assertEqual([item["text"] for item in latest], ["m2", "m4"])
        self.assertEqual(db.count_inbound_messages(self.conn, "telegram", "42"), 3)
        self.assertEqual(db.count_inbound_messages(self.conn, "telegram", "nobody"), 0)

    def test_upsert_lead_and_status_update(self) -> None:
        db.upsert_lead(self.conn, "whatsapp", "6591234567", score=30, tier="cold", message_count=1, phone="6591234567")
        db.upsert_lead(self.conn, "whatsapp", "6591234567", score=55, tier="warm", message_count=2)
        lead = db.get_lead(self.conn, "whatsapp", "6591234567")
        self.assertEqual(lead["score"], 55)
        self.assertEqual(lead["tier"], "warm")
        self.assertEqual(lead["status"], "new")
        self.assertEqual(lead["phone"], "6591234567")

        db.update_lead_status(self.conn, "whatsapp", "6591234567", "qualified")
        self.assertEqual(db.get_lead(self.conn, "whatsapp", "6591234567")["status"], "qualified")
        self.assertEqual(len(db.list_recent_leads(self.conn)), 1)

    def test_booking_insert_update_and_filter(self) -> None:
        record = {
            "id": "b1",
            "channel": "telegram",
            "external_id": "42",
            "property": "Bedok Resale Condo",
            "name": "Jane Tan",
            "phone": "6591234567",
            "email": "jane@example.com",
            "date": "2026-10-21",
            "time": "14:00",
            "status": "confirmed",
            "calendar_event_id": None,
        }
        db.insert_booking(self.conn, record)
        db.update_booking(self.conn, "b1", {"status": "cancelled"})
        self.assertEqual(db.get_booking(self.conn, "b1")["status"], "cancelled")
        self.assertEqual(db.list_bookings(self.conn, statuses=["confirmed"]), [])
        self.assertEqual(len(db.list_bookings(self.conn)), 1)

    def test_update_booking_rejects_unknown_columns(self) -> None:
        with self.assertRaises(ValueError):
            db.update_booking(self.conn, "b1", {"name": "Mallory"})


if __name__ == "__main__":
    unittest.main()
