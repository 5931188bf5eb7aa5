import pytest
import yaml
from pydantic import ValidationError

from grafana_migrator.core.config import Config, InstanceConfig, load_config_file

INSTANCES = {
    'src': {'host': 'https://grafana-a.example.com', 'api_key': 'key-a'},
    'dst': {'host': 'https://grafana-b.example.com', 'api_key': 'key-b'},
}


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / 'grafana.yaml'
    with open(path, 'w') as f:
        yaml.safe_dump({
            **INSTANCES,
            'settings': {'max_workers': 3, 'log_level': 'DEBUG'},
            'datasource_secrets': {
                'prom': {'basicAuthPassword': 'by-uid'},
                'Loki': {'basicAuthPassword': 'by-name'},
            },
        }, f)
    return path


def test_defaults():
    config = Config(**INSTANCES)

    assert config.max_workers == 4
    assert config.api_retry_max_attempts == 3
    assert config.run_timeout_seconds is None
    assert config.datasource_secrets == {}


def test_yaml_file(config_file):
    config = Config(config_file=str(config_file))

    assert config.src.host == 'https://grafana-a.example.com'
    assert config.dst.api_key == 'key-b'
    assert config.max_workers == 3
    assert config.log_level == 'DEBUG'


def test_config_file_from_environment(config_file, monkeypatch):
    monkeypatch.setenv('CONFIG_FILE', str(config_file))

    assert Config().max_workers == 3


def test_environment_overrides_file(config_file, monkeypatch):
    monkeypatch.setenv('MAX_WORKERS', '6')
    monkeypatch.setenv('GRAFANA_SRC_HOST', 'https://override.example.com')

    config = Config(config_file=str(config_file))

    assert config.max_workers == 6
    assert config.src.host == 'https://override.example.com'
    assert config.src.api_key == 'key-a'


def test_keyword_arguments_override_environment(monkeypatch):
    monkeypatch.setenv('MAX_WORKERS', '6')

    assert Config(max_workers=2, **INSTANCES).max_workers == 2


def test_instances_from_environment(monkeypatch):
    monkeypatch.setenv('GRAFANA_SRC_HOST', 'http://a')
    monkeypatch.setenv('GRAFANA_SRC_API_KEY', 'ka')
    monkeypatch.setenv('GRAFANA_DST_HOST', 'http://b')
    monkeypatch.setenv('GRAFANA_DST_API_KEY', 'kb')

    config = Config()

    assert config.validate_config()
    assert config.dst.headers['Authorization'] == 'Bearer kb'


def test_missing_instance_is_rejected():
    with pytest.raises(ValidationError):
        Config(src=INSTANCES['src'])


def test_validate_config_rejects_empty_credentials():
    config = Config(src={'host': 'http://a', 'api_key': ''}, dst=INSTANCES['dst'])

    with pytest.raises(ValueError):
        config.validate_config()


def test_invalid_worker_count():
    with pytest.raises(ValidationError):
        Config(max_workers=0, **INSTANCES)


def test_secrets_lookup_by_uid_then_name(config_file):
    config = Config(config_file=str(config_file))

    assert config.secrets_for('prom', 'Prometheus') == {'basicAuthPassword': 'by-uid'}
    assert config.secrets_for('loki-uid', 'Loki') == {'basicAuthPassword': 'by-name'}
    assert config.secrets_for('other', 'Other') is None


def test_missing_config_file(tmp_path):
    with pytest.raises(ValueError):
        load_config_file(str(tmp_path / 'absent.yaml'))


def test_instance_headers():
    headers = InstanceConfig(host='http://a', api_key='token').headers

    assert headers == {'Authorization': 'Bearer token', 'Content-Type': 'application/json'}
