"""
Test runtime configuration and logging setup.
"""
import logging
import os

import pytest

from poloc.core.errors import ValidationError
from poloc.core.protocol import constants as C
from poloc.core.protocol.config import VerifierConfig
from poloc.utils.log_setup import LOG_FORMAT, configure_logging


class TestVerifierConfig:
    def test_defaults_match_constants(self):
        config = VerifierConfig()
        assert config.r_star_threshold_m == C.R_STAR_THRESHOLD_M
        assert config.quorum == C.QUORUM
        assert config.pipeline == C.DEFAULT_PIPELINE
        assert config.to_dict()["pipeline"] == list(C.DEFAULT_PIPELINE)

    def test_from_env(self):
        environ = {
            "POLOC_QUORUM": "5",
            "POLOC_R_STAR_THRESHOLD_M": "250.5",
            "POLOC_PIPELINE": "ratio, decomposition",
            "POLOC_CALIBRATE_ON_ACCEPT": "yes",
            "UNRELATED": "1",
        }
        config = VerifierConfig.from_env(environ)
        assert config.quorum == 5
        assert config.r_star_threshold_m == 250.5
        assert config.pipeline == ("ratio", "decomposition")
        assert config.calibrate_on_accept is True

    def test_overrides_win_over_env(self):
        config = VerifierConfig.from_env({"POLOC_QUORUM": "5"}, quorum=4)
        assert config.quorum == 4

    def test_bad_env_value(self):
        with pytest.raises(ValidationError):
            VerifierConfig.from_env({"POLOC_QUORUM": "many"})

    @pytest.mark.parametrize("overrides", [
        {"quantile_beta": 1.0},
        {"beta_cut_fraction": 0.0},
        {"sector_resolution_deg": 0},
        {"quorum": 0},
        {"quorum": 30},
        {"rpca_rho": 1.0},
        {"challenge_duration_s": 90_000},
        {"voting_window_s": 0},
        {"expiry_grace_s": 30},
        {"pipeline": ("ratio", "magic")},
    ])
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ValidationError):
            VerifierConfig(**overrides)


class TestLogging:
    def test_configure_logging_to_file(self, temp_dir):
        log_file = os.path.join(temp_dir, "logs", "poloc.log")
        handler = configure_logging("debug", log_file=log_file)
        try:
            assert logging.getLogger().level == logging.DEBUG
            assert logging.getLogger("poloc.core.filtering").level == logging.DEBUG
            assert handler.formatter._fmt == LOG_FORMAT

            logging.getLogger("poloc.core.coordination.coordinator").info("challenge started")
            handler.flush()
            with open(log_file, encoding="utf-8") as f:
                assert "[POLOC] challenge started" in f.read()
        finally:
            logging.getLogger().removeHandler(handler)
            handler.close()

    def test_configure_logging_replaces_handlers(self):
        first = configure_logging(logging.INFO)
        second = configure_logging(logging.WARNING)
        try:
            assert logging.getLogger().handlers == [second]
            assert first is not second
        finally:
            logging.getLogger().removeHandler(second)
