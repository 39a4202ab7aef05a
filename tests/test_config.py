"""
Tests for configuration loading.
"""

import pytest

from twitchrecorder.config import (
    Config,
    as_bool,
    as_int,
    build_config,
    load_config,
    merge,
    read_config_file,
)


CONFIG_YAML = """
channel: yamlchannel
recorder:
  quality: "720"
  template: ":channel"
  download_options:
    keep_ads: yes
    retries: "2"
time:
  timezone: America/New_York
  format: en-US
"""


class TestParsers:
    """Test lenient YAML value parsing."""

    def test_as_bool(self):
        assert as_bool('yes', False) is True
        assert as_bool('off', True) is False
        assert as_bool('maybe', True) is True
        assert as_bool(None, False) is False

    def test_as_int(self):
        assert as_int('3', 0) == 3
        assert as_int('2,5', 0) == 2
        assert as_int('', 7) == 7
        assert as_int('abc', 7) == 7


class TestMerge:
    """Test override merging."""

    def test_none_does_not_override(self):
        """Test unset CLI flags keep file values."""
        base = {'recorder': {'quality': '720', 'vod': True}}
        result = merge(base, {'recorder': {'quality': None, 'vod': False}})
        assert result == {'recorder': {'quality': '720', 'vod': False}}

    def test_base_not_mutated(self):
        base = {'a': {'b': 1}}
        merge(base, {'a': {'b': 2}})
        assert base == {'a': {'b': 1}}


class TestBuildConfig:
    """Test typed configuration building."""

    def test_defaults(self):
        """Test an empty mapping gives default settings."""
        config = build_config({})
        assert config == Config()
        assert config.recorder.quality == 'best'
        assert config.recorder.download_options.retries == 0

    def test_invalid_time_format_falls_back(self):
        config = build_config({'time': {'format': 'de-DE'}})
        assert config.time.format == 'en-GB'

    def test_auth_redacted(self):
        """Test the auth token never appears in the config dump."""
        config = build_config({'recorder': {'auth': 'secret-token'}})
        assert config.recorder.auth == 'secret-token'
        assert 'secret-token' not in str(config.to_dict())


class TestLoadConfig:
    """Test file and command-line precedence."""

    def test_file_values(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text(CONFIG_YAML)

        config = load_config(['--config', str(path)])

        assert config.channel == 'yamlchannel'
        assert config.recorder.quality == '720'
        assert config.recorder.download_options.keep_ads is True
        assert config.recorder.download_options.retries == 2
        assert config.time.format == 'en-US'

    def test_cli_overrides_file(self, tmp_path):
        """Test command-line flags take precedence over the file."""
        path = tmp_path / 'config.yaml'
        path.write_text(CONFIG_YAML)

        config = load_config([
            '--config', str(path), '--channel', 'clichannel', '--quality', 'source',
            '--vod', '--keepSegments', '--tz', 'UTC',
        ])

        assert config.channel == 'clichannel'
        assert config.recorder.quality == 'source'
        assert config.recorder.vod is True
        assert config.recorder.download_options.keep_segments is True
        # Not given on the command line, so the file value stays
        assert config.recorder.download_options.keep_ads is True
        assert config.time.timezone == 'UTC'

    def test_missing_default_config_is_fine(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_config(['--channel', 'someone'])
        assert config.channel == 'someone'

    def test_missing_explicit_config_fails(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(['--config', str(tmp_path / 'missing.yaml')])

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text('- a\n- b\n')
        with pytest.raises(ValueError):
            read_config_file(str(path))
