import yaml

from ble_fingerprint_locator.config_manager import ConfigManager


class TestConfigManager:
    def test_creates_default_file(self, tmp_path):
        path = tmp_path / "config" / "config.yaml"

        config = ConfigManager(str(path))

        assert path.exists()
        assert config.get_localization_config()["k"] == 5
        assert config.get_localization_config()["ema_alpha"] == 0.35
        assert config.get_ranging_config()["offline_timeout"] == 3.0

    def test_merges_partial_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"localization": {"k": 3}}), encoding="utf-8")

        config = ConfigManager(str(path))

        assert config.get_localization_config()["k"] == 3
        assert config.get_localization_config()["rssi_floor"] == -100.0
        assert config.get_mqtt_config()["port"] == 1883

    def test_setter_persists(self, tmp_path):
        path = tmp_path / "config.yaml"
        config = ConfigManager(str(path))

        config.set_localization_config(k=7, plan_id="ENG4_SOUTH")

        reloaded = ConfigManager(str(path))
        assert reloaded.get_localization_config()["k"] == 7
        assert reloaded.get_localization_config()["plan_id"] == "ENG4_SOUTH"

    def test_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("BLE_FP_K", "9")
        monkeypatch.setenv("BLE_FP_EMA_ALPHA", "oops")

        config = ConfigManager(str(tmp_path / "config.yaml"))

        assert config.get_localization_config()["k"] == 9
        assert config.get_localization_config()["ema_alpha"] == 0.35

    def test_broken_yaml_falls_back(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("localization: [unclosed", encoding="utf-8")

        config = ConfigManager(str(path))

        assert config.get_localization_config()["k"] == 5

    def test_countdown_interval_default_and_env(self, tmp_path, monkeypatch):
        assert ConfigManager(str(tmp_path / "a.yaml")).get_ranging_config()["countdown_interval"] == 1.0

        monkeypatch.setenv("BLE_FP_COUNTDOWN_INTERVAL", "0.5")
        config = ConfigManager(str(tmp_path / "b.yaml"))

        assert config.get_ranging_config()["countdown_interval"] == 0.5
