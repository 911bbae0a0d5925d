"""
Backup manifest loading and validation.

The manifest is a YAML document:

    sources:
      databases:
        <name>: {driver, host, port, user, password, name}
      directories:
        <name>: {path}
    destinations:
      <name>: {provider, bucketName, accessKeyId, secretAccessKey, region, endpointUrl}
    jobs:
      <name>:
        output: {dir, name}
        databases: [...]
        directories: [...]
        destinations: [...]

Loading happens in two passes. Field validation checks each entry on its own
(required keys, allowed drivers/providers, existing directories). Reference
validation then checks that every job points at sources and destinations that
exist. Both passes collect every problem before failing, and a manifest with
field errors still has its job references checked so one load reports both.
"""

import os
from dataclasses import dataclass
from typing import Any, Collection, Dict, List, Optional
from urllib.parse import urlparse

import yaml

from .models import (
    Configuration,
    DatabaseDriver,
    DatabaseSource,
    Destination,
    DirectorySource,
    Job,
    OutputSpec,
    Sources,
    StorageProvider,
)


class ConfigLoadError(Exception):
    """Raised when the manifest cannot be read or has invalid fields."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = list(errors or [])
        if self.errors:
            message = message + '\n' + '\n'.join(f"  - {error}" for error in self.errors)
        super().__init__(message)


@dataclass(frozen=True)
class ReferenceViolation:
    """A job referencing something that does not exist, or missing required parts."""
    job_name: str
    message: str

    def __str__(self):
        return f"job {self.job_name!r} {self.message}"


class ReferenceValidationError(ConfigLoadError):
    """Raised when one or more jobs have invalid cross-references."""

    def __init__(self, violations: List[ReferenceViolation]):
        self.violations = list(violations)
        super().__init__("invalid configuration:", [str(v) for v in self.violations])


def load_config(config_path: str) -> Configuration:
    """
    Load, parse and validate a backup manifest.

    Args:
        config_path: Path to the YAML manifest

    Returns:
        Validated Configuration

    Raises:
        ConfigLoadError: If the file cannot be read, is not valid YAML, or has invalid fields
        ReferenceValidationError: If jobs reference unknown sources or destinations
    """
    if not os.path.exists(config_path):
        raise ConfigLoadError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Error parsing YAML configuration {config_path}: {e}")
    except OSError as e:
        raise ConfigLoadError(f"Failed to read configuration {config_path}: {e}")

    config = parse_config(data)
    return validate(config)


def parse_config(data: Any) -> Configuration:
    """
    Build a Configuration from a decoded manifest, checking every field.

    Raises:
        ConfigLoadError: Listing every field problem found, together with the
            reference problems of the jobs that did parse
    """
    if not isinstance(data, dict):
        raise ConfigLoadError("Configuration root must be a mapping")

    errors: List[str] = []

    sources_data = _mapping(data.get('sources'), 'sources', errors)
    databases_data = _mapping(sources_data.get('databases'), 'sources.databases', errors)
    directories_data = _mapping(sources_data.get('directories'), 'sources.directories', errors)
    destinations_data = _mapping(data.get('destinations'), 'destinations', errors)
    jobs_data = _mapping(data.get('jobs'), 'jobs', errors)

    if not databases_data and not directories_data:
        errors.append("sources: at least one database or directory must be defined")
    if not destinations_data:
        errors.append("destinations: at least one destination must be defined")
    if not jobs_data:
        errors.append("jobs: at least one job must be defined")

    databases = {}
    for name, entry in databases_data.items():
        source = _parse_database(str(name), entry, errors)
        if source is not None:
            databases[str(name)] = source

    directories = {}
    for name, entry in directories_data.items():
        source = _parse_directory(str(name), entry, errors)
        if source is not None:
            directories[str(name)] = source

    destinations = {}
    for name, entry in destinations_data.items():
        destination = _parse_destination(str(name), entry, errors)
        if destination is not None:
            destinations[str(name)] = destination

    jobs = {}
    for name, entry in jobs_data.items():
        job = _parse_job(str(name), entry, errors)
        if job is not None:
            jobs[str(name)] = job

    if errors:
        # Check references against every declared name so a broken entry is not also reported as unknown
        for job_name in sorted(jobs):
            errors.extend(str(v) for v in _job_violations(
                job_name,
                jobs[job_name],
                database_names=set(map(str, databases_data)),
                directory_names=set(map(str, directories_data)),
                destination_names=set(map(str, destinations_data))
            ))
        raise ConfigLoadError("Configuration validation failed:", errors)

    return Configuration(
        sources=Sources(databases=databases, directories=directories),
        destinations=destinations,
        jobs=jobs
    )


def validate_references(config: Configuration) -> List[ReferenceViolation]:
    """
    Check every job's output settings and references.

    Returns:
        All violations found, in job name order (empty if the configuration is valid)
    """
    violations = []

    for job_name in sorted(config.jobs):
        violations.extend(_job_violations(
            job_name,
            config.jobs[job_name],
            database_names=config.sources.databases,
            directory_names=config.sources.directories,
            destination_names=config.destinations
        ))

    return violations


def validate(config: Configuration) -> Configuration:
    """
    Return the configuration unchanged if all job references are valid.

    Raises:
        ReferenceValidationError: Carrying every violation found
    """
    violations = validate_references(config)
    if violations:
        raise ReferenceValidationError(violations)
    return config


def _job_violations(
    job_name: str,
    job: Job,
    database_names: Collection[str],
    directory_names: Collection[str],
    destination_names: Collection[str]
) -> List[ReferenceViolation]:
    violations = []

    if not job.output.dir or not job.output.name:
        violations.append(ReferenceViolation(job_name, "requires an output dir/name"))

    if not job.databases and not job.directories:
        violations.append(ReferenceViolation(job_name, "requires at least one database or directory"))

    if not job.destinations:
        violations.append(ReferenceViolation(job_name, "requires at least one destination"))

    for db_name in job.databases:
        if db_name not in database_names:
            violations.append(ReferenceViolation(job_name, f"references unknown database {db_name!r}"))

    for dir_name in job.directories:
        if dir_name not in directory_names:
            violations.append(ReferenceViolation(job_name, f"references unknown directory {dir_name!r}"))

    for dest_name in job.destinations:
        if dest_name not in destination_names:
            violations.append(ReferenceViolation(job_name, f"references unknown destination {dest_name!r}"))

    return violations


def _mapping(value: Any, path: str, errors: List[str]) -> Dict[Any, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        errors.append(f"{path}: must be a mapping")
        return {}
    return value


def _required_str(entry: Dict[str, Any], key: str, path: str, errors: List[str]) -> Optional[str]:
    value = entry.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        errors.append(f"{path}.{key}: field is required")
        return None
    if isinstance(value, (dict, list)):
        errors.append(f"{path}.{key}: must be a string")
        return None
    return str(value)


def _optional_str(entry: Dict[str, Any], key: str) -> Optional[str]:
    value = entry.get(key)
    if value is None or str(value).strip() == '':
        return None
    return str(value)


def _name_list(entry: Dict[str, Any], key: str, path: str, errors: List[str]) -> tuple:
    value = entry.get(key)
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        errors.append(f"{path}.{key}: must be a list of names")
        return ()
    # De-duplicate while keeping the order from the manifest
    return tuple(dict.fromkeys(value))


def _parse_database(name: str, entry: Any, errors: List[str]) -> Optional[DatabaseSource]:
    path = f"sources.databases.{name}"
    if not isinstance(entry, dict):
        errors.append(f"{path}: must be a mapping")
        return None

    count = len(errors)

    driver = None
    driver_value = _required_str(entry, 'driver', path, errors)
    if driver_value is not None:
        try:
            driver = DatabaseDriver(driver_value)
        except ValueError:
            errors.append(
                f"{path}.driver: invalid driver {driver_value!r}. "
                f"Valid options: {[d.value for d in DatabaseDriver]}"
            )

    host = _required_str(entry, 'host', path, errors)
    user = _required_str(entry, 'user', path, errors)
    password = _required_str(entry, 'password', path, errors)
    database_name = _required_str(entry, 'name', path, errors)

    port = entry.get('port')
    if port is None:
        errors.append(f"{path}.port: field is required")
    elif isinstance(port, bool) or not isinstance(port, (int, str)) or not str(port).isdigit():
        errors.append(f"{path}.port: must be an integer")
    elif not 0 < int(port) < 65536:
        errors.append(f"{path}.port: must be between 1 and 65535")

    if len(errors) > count:
        return None

    return DatabaseSource(
        driver=driver,
        host=host,
        port=int(port),
        user=user,
        password=password,
        database_name=database_name
    )


def _parse_directory(name: str, entry: Any, errors: List[str]) -> Optional[DirectorySource]:
    path = f"sources.directories.{name}"
    if not isinstance(entry, dict):
        errors.append(f"{path}: must be a mapping")
        return None

    dir_path = _required_str(entry, 'path', path, errors)
    if dir_path is None:
        return None

    if not os.path.isdir(os.path.expanduser(dir_path)):
        errors.append(f"{path}.path: directory does not exist: {dir_path}")
        return None

    return DirectorySource(path=dir_path)


def _parse_destination(name: str, entry: Any, errors: List[str]) -> Optional[Destination]:
    path = f"destinations.{name}"
    if not isinstance(entry, dict):
        errors.append(f"{path}: must be a mapping")
        return None

    count = len(errors)

    provider = None
    provider_value = _required_str(entry, 'provider', path, errors)
    if provider_value is not None:
        try:
            provider = StorageProvider(provider_value)
        except ValueError:
            errors.append(
                f"{path}.provider: invalid provider {provider_value!r}. "
                f"Valid options: {[p.value for p in StorageProvider]}"
            )

    bucket_name = _required_str(entry, 'bucketName', path, errors)
    access_key_id = _required_str(entry, 'accessKeyId', path, errors)
    secret_access_key = _required_str(entry, 'secretAccessKey', path, errors)
    region = _optional_str(entry, 'region')
    endpoint_url = _optional_str(entry, 'endpointUrl')

    if provider == StorageProvider.S3 and region is None:
        errors.append(f"{path}.region: field is required for provider 's3'")
    if provider == StorageProvider.MINIO and endpoint_url is None:
        errors.append(f"{path}.endpointUrl: field is required for provider 'minio'")
    if endpoint_url is not None:
        parsed = urlparse(endpoint_url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            errors.append(f"{path}.endpointUrl: must be an http(s) URL, got {endpoint_url!r}")

    if len(errors) > count:
        return None

    return Destination(
        provider=provider,
        bucket_name=bucket_name,
        access_key_id=access_key_id,
        secret_access_key=secret_access_key,
        region=region,
        endpoint_url=endpoint_url
    )


def _parse_job(name: str, entry: Any, errors: List[str]) -> Optional[Job]:
    path = f"jobs.{name}"
    if not isinstance(entry, dict):
        errors.append(f"{path}: must be a mapping")
        return None

    count = len(errors)

    # Empty or missing output values are left to reference validation
    output_data = entry.get('output') or {}
    if not isinstance(output_data, dict):
        errors.append(f"{path}.output: must be a mapping")
        output_data = {}
    output = OutputSpec(
        dir=_optional_str(output_data, 'dir') or '',
        name=_optional_str(output_data, 'name') or ''
    )

    databases = _name_list(entry, 'databases', path, errors)
    directories = _name_list(entry, 'directories', path, errors)
    destinations = _name_list(entry, 'destinations', path, errors)

    if len(errors) > count:
        return None

    return Job(
        output=output,
        databases=databases,
        directories=directories,
        destinations=destinations
    )
