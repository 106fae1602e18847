# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for the volume manager.
"""
import os
import threading

import pytest

from stackctl.errors import VolumeInUseError
from stackctl.MANAGERS.volume_manager import VolumeManager
from stackctl.MODELS.service_spec import VolumeMount


class TestVolumeManager:
    """Tests for VolumeManager."""

    def test_ensure_creates_once(self, driver):
        vm = VolumeManager(driver)
        first = vm.ensure("data")
        second = vm.ensure("data")
        assert first == second
        assert first.ref == "fake://data"
        assert driver.calls_of("create_volume") == ["data"]

    def test_concurrent_ensure_creates_once(self, driver):
        vm = VolumeManager(driver)
        threads = [threading.Thread(target=vm.ensure, args=("shared",)) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert driver.calls_of("create_volume") == ["shared"]

    def test_remove(self, driver):
        vm = VolumeManager(driver)
        vm.ensure("data")
        assert vm.remove("data") is True
        assert vm.get("data") is None
        assert "data" not in driver.volumes

    def test_remove_unknown(self, driver):
        assert VolumeManager(driver).remove("nope") is False

    def test_remove_in_use(self, driver):
        vm = VolumeManager(driver, users=lambda name: ["db", "backup"] if name == "data" else [])
        vm.ensure("data")
        with pytest.raises(VolumeInUseError) as info:
            vm.remove("data")
        assert info.value.services == ["backup", "db"]
        assert vm.get("data") is not None
        assert "data" in driver.volumes

    def test_adopt(self, driver):
        vm = VolumeManager(driver)
        vm.adopt({"old": "fake://old"})
        assert vm.ensure("old").ref == "fake://old"
        assert driver.calls_of("create_volume") == []
        assert [h.name for h in vm.list()] == ["old"]

    def test_list_is_sorted(self, driver):
        vm = VolumeManager(driver)
        for name in ("b", "c", "a"):
            vm.ensure(name)
        assert [h.name for h in vm.list()] == ["a", "b", "c"]

    def test_resolve_mounts(self, driver, tmp_path):
        vm = VolumeManager(driver, base_dir=str(tmp_path))
        mounts = vm.resolve_mounts([
            VolumeMount(source="data", target="/data", read_only=True),
            VolumeMount(source="./conf", target="/etc/conf"),
        ])
        assert mounts[0].source == "fake://data"
        assert mounts[0].volume == "data"
        assert mounts[0].read_only
        assert mounts[1].source == os.path.join(str(tmp_path), "conf")
        assert mounts[1].volume is None
