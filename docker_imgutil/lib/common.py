# -*- coding: utf-8 -*-

import datetime
import hashlib
import json
import os
import re

import docker
import requests

from docker_imgutil.errors import Error

DEFAULT_TIMEOUT_SECONDS = 600

MAX_RETRIES = 2

NORMALIZED_DATE_TIME = datetime.datetime(1980, 1, 1, 0, 0, 1, tzinfo=datetime.timezone.utc)
""" Creation time used for reproducible builds when none is provided """


def docker_client(log):
    log.debug("Preparing Docker client...")

    # Default timeout 10 minutes
    timeout = timeout_from_env("DOCKER_TIMEOUT")

    params = docker.utils.kwargs_from_env()
    params["timeout"] = timeout
    try:
        client = docker.APIClient(version="auto", **params)
    except docker.errors.DockerException as e:
        log.error(
            "Could not create Docker client, please make sure that you specified valid parameters in the 'DOCKER_HOST' environment variable."
        )
        raise Error("Error while creating the Docker client: %s" % e)

    if client and valid_docker_connection(client):
        log.debug("Docker client ready")
        return client
    else:
        log.error(
            "Could not connect to the Docker daemon, please make sure the Docker daemon is running."
        )

        if os.environ.get("DOCKER_HOST"):
            log.error(
                "If Docker daemon is running, please make sure that you specified valid parameters in the 'DOCKER_HOST' environment variable."
            )

        raise Error("Cannot connect to Docker daemon")


def valid_docker_connection(client):
    try:
        return client.ping()
    except requests.exceptions.ConnectionError:
        return False


def timeout_from_env(variable, default=DEFAULT_TIMEOUT_SECONDS):
    try:
        timeout = int(os.getenv(variable, default))
    except ValueError:
        raise Error(
            "Provided timeout value: %s cannot be parsed as integer, exiting."
            % os.getenv(variable)
        )

    if not timeout > 0:
        raise Error(
            "Provided timeout value needs to be greater than zero, currently: %s, exiting."
            % timeout
        )

    return timeout


def retry(log, description, func, *args, **kwargs):
    """
    Calls func, trying again once when it raises.

    Only meant for idempotent reads and probes. The exception of the
    last attempt is propagated.
    """
    for attempt in range(MAX_RETRIES):
        log.debug("%s, try #%s..." % (description, attempt + 1))

        try:
            return func(*args, **kwargs)
        except Exception:
            if attempt + 1 == MAX_RETRIES:
                raise

            log.warning(f"An error occurred while {description.lower()}, retrying...")


def format_date(date):
    """
    Formats the date the way Go marshals time.Time into JSON.

    Golang doesn't add padding to microseconds when marshaling
    dates into JSON and skips the fraction completely when it is zero.
    We need to produce the same output as Docker's to not generate
    different metadata.
    """
    date = date.astimezone(datetime.timezone.utc)

    if date.microsecond:
        return re.sub(r"0*Z$", "Z", date.strftime("%Y-%m-%dT%H:%M:%S.%fZ"))

    return date.strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_date(value):
    if not value:
        return None

    match = re.match(r"^(.*T\d\d:\d\d:\d\d)(\.\d+)?(Z|[+-]\d\d:\d\d)$", value)

    if not match:
        raise Error("Cannot parse '%s' as a date" % value)

    base, fraction, zone = match.groups()
    fraction = (fraction or ".0")[1:7].ljust(6, "0")

    if zone == "Z":
        zone = "+00:00"

    date = datetime.datetime.fromisoformat("%s.%s%s" % (base, fraction, zone))

    return date.astimezone(datetime.timezone.utc)


def dump_json(data, new_line=False):
    """
    Helper function to marshal object into JSON string.
    Additionally a sha256sum of the created JSON string is generated.
    """

    # We do not want any spaces between keys and values in JSON
    json_data = json.dumps(data, separators=(",", ":"))

    if new_line:
        json_data = "%s\n" % json_data

    sha = hashlib.sha256(json_data.encode("utf-8")).hexdigest()

    return json_data, sha


def canonical_json(data):
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def sha256_digest(data):
    if isinstance(data, str):
        data = data.encode("utf-8")

    return "sha256:%s" % hashlib.sha256(data).hexdigest()
