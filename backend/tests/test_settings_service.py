import unittest

from orderledger import create_app
from orderledger.extensions import db
from orderledger.models import Channel
from orderledger.services import settings_service
from orderledger.services.channel_service import create_channel
from orderledger.services.settings_service import ChannelSettings, SettingsError


class SettingsServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = create_app({
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "SQLALCHEMY_TRACK_MODIFICATIONS": False,
            "TESTING": True,
            "DEFAULT_CURRENCY_CODE": "KES",
            "DEFAULT_VARIANCE_NOTIFICATION_THRESHOLD_CENTS": 250,
            "DEFAULT_ORDER_ITEM_LIMIT": 50,
            "ALLOCATION_ORDER_POLICY": "newest_first",
        })
        cls.ctx = cls.app.app_context()
        cls.ctx.push()
        db.create_all()

    @classmethod
    def tearDownClass(cls):
        db.session.remove()
        db.drop_all()
        cls.ctx.pop()

    def setUp(self):
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        self.channel = create_channel(code="WEB", name="Web", currency_code="")
        db.session.commit()

    def test_config_defaults_apply_when_channel_is_silent(self):
        settings = settings_service.get_channel_settings(self.channel.id)

        self.assertEqual(settings.currency_code, "KES")
        self.assertEqual(settings.variance_notification_threshold_cents, 250)
        self.assertEqual(settings.order_item_limit, 50)
        self.assertEqual(settings.allocation_order_policy, "newest_first")
        self.assertFalse(settings.cash_control_enabled)
        self.assertTrue(settings.hide_variance_from_cashier)

    def test_channel_values_override_config(self):
        channel = create_channel(
            code="POS",
            name="Counter",
            currency_code="USD",
            cash_control_enabled=True,
            require_opening_count=True,
            variance_notification_threshold_cents=0,
            hide_variance_from_cashier=False,
            order_item_limit=5,
        )
        db.session.commit()

        settings = settings_service.get_channel_settings(channel.id)

        self.assertEqual(settings.currency_code, "USD")
        self.assertTrue(settings.cash_control_enabled)
        self.assertTrue(settings.require_opening_count)
        # Zero is a real threshold, not "unset"
        self.assertEqual(settings.variance_notification_threshold_cents, 0)
        self.assertFalse(settings.hide_variance_from_cashier)
        self.assertEqual(settings.order_item_limit, 5)

    def test_changes_to_channel_row_are_picked_up(self):
        channel = db.session.get(Channel, self.channel.id)
        channel.order_item_limit = 3
        db.session.commit()

        self.assertEqual(settings_service.get_channel_settings(self.channel.id).order_item_limit, 3)

    def test_with_overrides_returns_a_copy(self):
        settings = settings_service.get_channel_settings(self.channel.id)

        strict = settings.with_overrides(cash_control_enabled=True, variance_notification_threshold_cents=0)

        self.assertIsInstance(strict, ChannelSettings)
        self.assertTrue(strict.cash_control_enabled)
        self.assertEqual(strict.variance_notification_threshold_cents, 0)
        self.assertFalse(settings.cash_control_enabled)
        self.assertEqual(settings.variance_notification_threshold_cents, 250)

    def test_unknown_channel(self):
        with self.assertRaises(SettingsError):
            settings_service.get_channel_settings(999)
