#!/usr/bin/env python3
"""
Unit tests for configuration loading and validation.
"""

import os
import shutil
import sys
import tempfile
import unittest
from unittest.mock import patch

import yaml

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_reconcile.config import ConfigLoader, ConfigurationError, load_config


def valid_config():
    return {
        'ldap': {
            'server_url': 'ldaps://ldap.example.com:636',
            'bind_dn': 'cn=admin,dc=example,dc=com',
            'bind_password': 'secret',
            'base_dn': 'dc=example,dc=com',
            'user_init_password': 'initial',
        },
        'sources': [
            {
                'name': 'dingtalk',
                'module': 'dingtalk',
                'base_url': 'https://oapi.dingtalk.com',
                'auth': {'app_key': 'key', 'app_secret': 'app-secret'},
            }
        ],
    }


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.config_path = os.path.join(self.temp_dir, 'config.yaml')

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write(self, config):
        with open(self.config_path, 'w') as f:
            yaml.dump(config, f)

    def test_load_applies_defaults(self):
        self.write(valid_config())

        config = load_config(self.config_path)

        ldap = config['ldap']
        self.assertEqual(ldap['user_base_dn'], 'ou=people,dc=example,dc=com')
        self.assertEqual(ldap['group_base_dn'], 'dc=example,dc=com')
        self.assertEqual(ldap['admin_dn'], 'cn=admin,dc=example,dc=com')
        self.assertEqual(ldap['default_role'], 'user')
        self.assertEqual(ldap['error_handling']['max_retries'], 3)
        self.assertEqual(config['database']['url'], 'memory://')
        self.assertEqual(config['schedule']['interval_minutes'], 0)
        self.assertFalse(config['notifications']['enable_email'])

        source = config['sources'][0]
        self.assertEqual(source['flag'], 'dingtalk')
        self.assertTrue(source['enabled'])
        self.assertFalse(source['update_on_sync'])
        self.assertEqual(source['leave_range_days'], 0)

    def test_missing_file(self):
        with self.assertRaises(ConfigurationError):
            load_config(os.path.join(self.temp_dir, 'missing.yaml'))

    def test_invalid_yaml(self):
        with open(self.config_path, 'w') as f:
            f.write('ldap: [unclosed')

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_all_errors_reported_together(self):
        config = valid_config()
        del config['ldap']['bind_password']
        del config['ldap']['user_init_password']
        config['sources'][0]['leave_range_days'] = -1
        config['sources'].append(dict(config['sources'][0]))
        self.write(config)

        with self.assertRaises(ConfigurationError) as ctx:
            load_config(self.config_path)

        message = str(ctx.exception)
        self.assertIn('bind_password', message)
        self.assertIn('user_init_password', message)
        self.assertIn('leave_range_days', message)
        self.assertIn("Duplicate source flag 'dingtalk'", message)

    def test_missing_source_credentials(self):
        config = valid_config()
        config['sources'][0]['auth'] = {'app_key': 'key'}
        self.write(config)

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_bad_interval(self):
        config = valid_config()
        config['schedule'] = {'interval_minutes': 'hourly'}
        self.write(config)

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    @patch.dict(os.environ, {
        'LDAP_BIND_PASSWORD': 'from-env',
        'DATABASE_URL': 'sqlite:///reconcile.db',
        'DINGTALK_APP_SECRET': 'env-secret',
    })
    def test_environment_overrides(self):
        config = valid_config()
        del config['ldap']['bind_password']
        del config['sources'][0]['auth']['app_secret']
        self.write(config)

        loaded = load_config(self.config_path)

        self.assertEqual(loaded['ldap']['bind_password'], 'from-env')
        self.assertEqual(loaded['database']['url'], 'sqlite:///reconcile.db')
        self.assertEqual(loaded['sources'][0]['auth']['app_secret'], 'env-secret')

    @patch.dict(os.environ, {}, clear=False)
    def test_config_path_from_environment(self):
        self.write(valid_config())
        os.environ['CONFIG_PATH'] = self.config_path

        self.assertEqual(ConfigLoader().config_path, self.config_path)


if __name__ == '__main__':
    unittest.main()
