import os
import tempfile
import unittest
from unittest.mock import patch

from beacon.config import Config


class ConfigTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self._tmp.name, 'config.yaml')
        with open(self.path, 'w', encoding='utf-8') as f:
            f.write(
                'beacon:\n'
                '  batch_interval_ms: ${BEACON_INTERVAL:-15000}\n'
                '  events_endpoint: "${BEACON_HOST:-http://localhost:8001}/api/analytics/events"\n'
                '  privacy_mode: ${BEACON_PRIVACY:-false}\n'
                'log:\n'
                '  level: DEBUG\n'
            )

    def tearDown(self):
        self._tmp.cleanup()

    def test_dotted_get_and_defaults(self):
        config = Config(self.path)
        self.assertEqual(config.get('log.level'), 'DEBUG')
        self.assertEqual(config.get('log.missing', 'x'), 'x')
        self.assertEqual(config.get('nope.deeper', 3), 3)

    def test_env_substitution_keeps_scalar_types(self):
        with patch.dict(os.environ, {'BEACON_INTERVAL': '5000'}, clear=False):
            os.environ.pop('BEACON_HOST', None)
            config = Config(self.path)
            self.assertEqual(config.get('beacon.batch_interval_ms'), 5000)
            self.assertIs(config.get('beacon.privacy_mode'), False)
            self.assertEqual(config.get('beacon.events_endpoint'), 'http://localhost:8001/api/analytics/events')

    def test_get_returns_copies(self):
        config = Config(self.path)
        section = config.get('beacon')
        section['batch_interval_ms'] = 1
        self.assertNotEqual(config.get('beacon.batch_interval_ms'), 1)

    def test_set_and_save_roundtrip(self):
        config = Config(self.path)
        config.set('beacon.max_buffer_size', 250)
        config.save_config()
        self.assertEqual(Config(self.path).get('beacon.max_buffer_size'), 250)

    def test_missing_file_is_empty(self):
        config = Config(os.path.join(self._tmp.name, 'absent.yaml'))
        self.assertEqual(config.config, {})
        self.assertIsNone(config.get('beacon'))

    def test_non_mapping_root_rejected(self):
        with open(self.path, 'w', encoding='utf-8') as f:
            f.write('- a\n- b\n')
        with self.assertRaises(ValueError):
            Config(self.path)


if __name__ == '__main__':
    unittest.main()
