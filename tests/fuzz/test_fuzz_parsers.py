import random
import string

import pytest
import yaml

from stackctl.errors import SpecError
from stackctl.PARSERS.compose_parser import ComposeParser, parse_duration
from stackctl.UTILS.string_interpolation import EnvironmentInterpolator, InterpolationError


def random_string(rng, length):
    return ''.join(rng.choice(string.printable) for _ in range(length))


def test_fuzz_compose_parser():
    rng = random.Random(1234)
    parser = ComposeParser(context={})
    for _ in range(200):
        content = random_string(rng, rng.randint(0, 1000))
        try:
            parser.parse_from_string(content)
        except SpecError:
            pass


def test_fuzz_compose_fields():
    """Valid YAML with random values in known fields only ever raises SpecError."""
    rng = random.Random(99)
    values = [None, 0, -1, 70000, "", "abc", "1:2:3", [], {}, [1, "x"], {"a": None}, True, 1.5]
    fields = ["image", "build", "command", "entrypoint", "environment", "env_file", "ports",
              "volumes", "restart", "depends_on", "stop_grace_period", "labels", "networks"]
    parser = ComposeParser(context={})
    for _ in range(300):
        service = {"image": "img"}
        for field in rng.sample(fields, rng.randint(1, 4)):
            service[field] = rng.choice(values)
        try:
            parser.parse_from_string(yaml.safe_dump({"services": {"svc": service}}))
        except SpecError:
            pass


def test_fuzz_interpolation():
    rng = random.Random(7)
    alphabet = "${}:-+?AB_ $"
    for _ in range(500):
        template = ''.join(rng.choice(alphabet) for _ in range(rng.randint(0, 30)))
        try:
            EnvironmentInterpolator.interpolate(template, {"A": "1", "B": ""})
        except InterpolationError:
            pass


@pytest.mark.parametrize("content", [
    "",
    "   \n\t  ",
    "services:",
    "services: ~",
    "services: []",
    "- just\n- a\n- list\n",
    "services:\n  web:\n",
    "services:\n  web:\n    image: " + "a" * 10000 + "\n",
])
def test_edge_cases_parsers(content):
    try:
        ComposeParser(context={}).parse_from_string(content)
    except SpecError:
        pass


@pytest.mark.parametrize("value", ["", "1h2m3s4ms5us", "-1s", "1.5.5s", None, [], "9" * 400])
def test_edge_cases_durations(value):
    try:
        parse_duration(value)
    except SpecError:
        pass
