import time

from stackctl.MANAGERS.service_orchestrator import ServiceOrchestrator
from stackctl.MODELS.service_instance import ServiceState
from stackctl.PARSERS.compose_parser import ComposeParser
from stackctl.RUNNERS.dependency_resolver import DependencyResolver
from tests.conftest import make_topology


def test_stress_orchestration(driver, settings):
    """
    Stress test by orchestrating 50 services simultaneously, in layers
    of ten, each depending on the whole layer before it.
    """
    services = {}
    for i in range(50):
        layer = i // 10
        deps = [f"service_{j}" for j in range((layer - 1) * 10, layer * 10)] if layer else []
        services[f"service_{i}"] = {"depends_on": deps}
    topology = make_topology(**services)
    orchestrator = ServiceOrchestrator(driver, settings=settings.model_copy(update={"up_timeout": 30.0}), env={})

    try:
        start_time = time.time()
        report = orchestrator.up(topology)
        end_time = time.time()
        print(f"Started 50 services in {end_time - start_time:.2f}s")

        assert report.succeeded
        assert len(orchestrator.status()) == 50
        assert all(s == ServiceState.RUNNING for s in orchestrator.status().values())

        creates = driver.calls_of("create")
        position = {name: i for i, name in enumerate(creates)}
        for name, fields in services.items():
            for dep in fields["depends_on"]:
                assert position[dep] < position[name]

        report = orchestrator.down(topology)
        assert all(o.state == ServiceState.STOPPED for o in report.outcomes)
        stops = driver.calls_of("stop")
        assert stops.index("service_0") > stops.index("service_49")
    finally:
        orchestrator.close()


def test_large_config_parsing():
    parser = ComposeParser(context={})

    # Generate a large compose file
    content = "services:\n"
    for i in range(1000):
        content += f"  service_{i}:\n"
        content += f"    image: image_{i}\n"
        content += "    environment:\n"
        content += f"      - VAR_{i}=VALUE_{i}\n"
        if i:
            content += f"    depends_on: [service_{i - 1}]\n"

    start_time = time.time()
    topology = parser.parse_from_string(content)
    order = DependencyResolver().resolve_order(topology)
    end_time = time.time()

    assert order[0] == "service_0" and order[-1] == "service_999"
    assert end_time - start_time < 5.0
