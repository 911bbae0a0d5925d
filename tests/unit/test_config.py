"""
Unit tests for manifest loading (backup_companion/config.py).
"""

import copy

import pytest
import yaml

from backup_companion.config import (
    ConfigLoadError,
    ReferenceValidationError,
    ReferenceViolation,
    load_config,
    parse_config,
    validate,
    validate_references,
)
from backup_companion.models import (
    DatabaseDriver,
    JobKind,
    OutputSpec,
    StorageProvider,
)


class TestLoadConfig:
    """Test load_config function."""

    def test_load_valid_manifest(self, config_file, source_tree, output_dir):
        config = load_config(str(config_file))

        orders = config.sources.databases['orders']
        assert orders.driver == DatabaseDriver.POSTGRES
        assert orders.port == 5432
        assert orders.database_name == 'orders'
        assert config.sources.directories['www'].path == str(source_tree)

        assert config.destinations['primary'].provider == StorageProvider.S3
        assert config.destinations['primary'].region == 'us-east-1'
        assert config.destinations['offsite'].provider == StorageProvider.MINIO
        assert config.destinations['offsite'].endpoint_url == 'http://localhost:9000'

        nightly = config.jobs['nightly']
        assert nightly.output == OutputSpec(dir=str(output_dir), name='nightly')
        assert nightly.databases == ('orders',)
        assert nightly.destinations == ('primary',)
        assert nightly.kind == JobKind.DATABASES_ONLY
        assert config.jobs['files'].kind == JobKind.FILES_ONLY

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigLoadError, match="Configuration file not found"):
            load_config(str(tmp_path / 'missing.yaml'))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / 'broken.yaml'
        path.write_text("sources: [unclosed\n")

        with pytest.raises(ConfigLoadError, match="Error parsing YAML"):
            load_config(str(path))

    def test_empty_file(self, tmp_path):
        path = tmp_path / 'empty.yaml'
        path.write_text("")

        with pytest.raises(ConfigLoadError, match="must be a mapping"):
            load_config(str(path))

    def test_reference_errors_are_raised(self, tmp_path, config_data):
        config_data['jobs']['nightly']['destinations'] = ['nowhere']
        path = tmp_path / 'config.yaml'
        path.write_text(yaml.safe_dump(config_data))

        with pytest.raises(ReferenceValidationError) as exc_info:
            load_config(str(path))

        assert [str(v) for v in exc_info.value.violations] == [
            "job 'nightly' references unknown destination 'nowhere'"
        ]


class TestParseConfig:
    """Test field validation of a decoded manifest."""

    def test_every_field_error_is_reported(self, config_data):
        """Test problems across entries are collected before failing."""
        data = copy.deepcopy(config_data)
        data['sources']['databases']['orders']['driver'] = 'oracle'
        del data['sources']['databases']['orders']['host']
        data['destinations']['primary']['provider'] = 'gcs'
        del data['destinations']['offsite']['endpointUrl']

        with pytest.raises(ConfigLoadError) as exc_info:
            parse_config(data)

        errors = exc_info.value.errors
        assert any("sources.databases.orders.driver: invalid driver 'oracle'" in e for e in errors)
        assert "sources.databases.orders.host: field is required" in errors
        assert any("destinations.primary.provider: invalid provider 'gcs'" in e for e in errors)
        assert "destinations.offsite.endpointUrl: field is required for provider 'minio'" in errors

    def test_error_message_lists_each_problem(self, config_data):
        config_data['sources']['databases']['orders']['port'] = 'abc'
        config_data['destinations']['primary']['bucketName'] = ''

        with pytest.raises(ConfigLoadError) as exc_info:
            parse_config(config_data)

        lines = str(exc_info.value).splitlines()
        assert lines[0] == "Configuration validation failed:"
        assert "  - sources.databases.orders.port: must be an integer" in lines
        assert "  - destinations.primary.bucketName: field is required" in lines

    @pytest.mark.parametrize('port', [0, 70000])
    def test_port_out_of_range(self, config_data, port):
        config_data['sources']['databases']['orders']['port'] = port

        with pytest.raises(ConfigLoadError, match="must be between 1 and 65535"):
            parse_config(config_data)

    def test_s3_requires_region(self, config_data):
        del config_data['destinations']['primary']['region']

        with pytest.raises(ConfigLoadError, match="region: field is required for provider 's3'"):
            parse_config(config_data)

    def test_endpoint_must_be_http_url(self, config_data):
        config_data['destinations']['offsite']['endpointUrl'] = 'localhost:9000'

        with pytest.raises(ConfigLoadError, match="must be an http"):
            parse_config(config_data)

    def test_missing_directory(self, config_data, tmp_path):
        config_data['sources']['directories']['www']['path'] = str(tmp_path / 'gone')

        with pytest.raises(ConfigLoadError, match="directory does not exist"):
            parse_config(config_data)

    def test_manifest_must_define_each_section(self):
        with pytest.raises(ConfigLoadError) as exc_info:
            parse_config({'sources': {}, 'destinations': {}, 'jobs': {}})

        assert len(exc_info.value.errors) == 3

    def test_name_lists_are_deduplicated(self, config_data):
        config_data['jobs']['files']['destinations'] = ['offsite', 'primary', 'offsite']

        config = parse_config(config_data)

        assert config.jobs['files'].destinations == ('offsite', 'primary')

    def test_name_list_must_be_list(self, config_data):
        config_data['jobs']['nightly']['databases'] = 'orders'

        with pytest.raises(ConfigLoadError, match="jobs.nightly.databases: must be a list of names"):
            parse_config(config_data)

    def test_field_and_reference_errors_reported_together(self, config_data):
        """Test an unknown destination is reported alongside a bad port."""
        config_data['sources']['databases']['orders']['port'] = 'not-a-port'
        config_data['jobs']['nightly']['destinations'] = ['ghost-dest']

        with pytest.raises(ConfigLoadError) as exc_info:
            parse_config(config_data)

        assert exc_info.value.errors == [
            "sources.databases.orders.port: must be an integer",
            "job 'nightly' references unknown destination 'ghost-dest'",
        ]
        assert "ghost-dest" in str(exc_info.value)

    def test_broken_entry_is_not_reported_as_unknown(self, config_data):
        """Test a job naming a database with field errors only gets the field error."""
        del config_data['sources']['databases']['orders']['host']

        with pytest.raises(ConfigLoadError) as exc_info:
            parse_config(config_data)

        assert exc_info.value.errors == ["sources.databases.orders.host: field is required"]

    def test_load_reports_field_and_reference_errors(self, tmp_path, config_data):
        config_data['destinations']['primary']['provider'] = 'gcs'
        config_data['jobs']['files']['directories'] = ['www', 'missing-dir']
        path = tmp_path / 'config.yaml'
        path.write_text(yaml.safe_dump(config_data))

        with pytest.raises(ConfigLoadError) as exc_info:
            load_config(str(path))

        message = str(exc_info.value)
        assert "destinations.primary.provider: invalid provider 'gcs'" in message
        assert "job 'files' references unknown directory 'missing-dir'" in message

    def test_string_port_is_accepted(self, config_data):
        config_data['sources']['databases']['orders']['port'] = '5433'

        assert parse_config(config_data).sources.databases['orders'].port == 5433


class TestValidateReferences:
    """Test cross-reference validation of jobs."""

    def test_valid_configuration(self, sample_config):
        assert validate_references(sample_config) == []
        assert validate(sample_config) is sample_config

    def test_each_unknown_reference_is_a_violation(self, config_data):
        config_data['jobs']['nightly']['databases'] = ['orders', 'ghost', 'phantom']

        violations = validate_references(parse_config(config_data))

        assert violations == [
            ReferenceViolation('nightly', "references unknown database 'ghost'"),
            ReferenceViolation('nightly', "references unknown database 'phantom'"),
        ]

    def test_job_without_sources(self, config_data):
        config_data['jobs']['nightly']['databases'] = []

        violations = validate_references(parse_config(config_data))

        assert [str(v) for v in violations] == [
            "job 'nightly' requires at least one database or directory"
        ]

    def test_job_without_destinations_or_output(self, config_data):
        del config_data['jobs']['files']['destinations']
        config_data['jobs']['files']['output'] = {'dir': '', 'name': 'files'}

        violations = validate_references(parse_config(config_data))

        assert [v.message for v in violations] == [
            "requires an output dir/name",
            "requires at least one destination",
        ]

    def test_violations_across_jobs(self, config_data):
        config_data['jobs']['files']['directories'] = ['missing-dir']
        config_data['jobs']['nightly']['destinations'] = ['missing-dest']

        with pytest.raises(ReferenceValidationError) as exc_info:
            validate(parse_config(config_data))

        message = str(exc_info.value)
        assert message.startswith("invalid configuration:")
        assert "job 'files' references unknown directory 'missing-dir'" in message
        assert "job 'nightly' references unknown destination 'missing-dest'" in message
        assert len(exc_info.value.errors) == 2
