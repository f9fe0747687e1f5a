import json
import logging
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from nbhopper.app_logging import PhaseTimer, log_with_fields, setup_logger


class AppLoggingTest(unittest.TestCase):
    def tearDown(self) -> None:
        logger = logging.getLogger("nbhopper")
        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()

    def test_json_file_carries_fields(self) -> None:
        with TemporaryDirectory() as temp_dir:
            log_path = Path(temp_dir) / "logs" / "nbhopper.log"
            logger = setup_logger(log_path)
            log_with_fields(logger, logging.INFO, "job_submitted", job_id="1.gadi-pbs", ncpus=2)
            for handler in logger.handlers:
                handler.flush()
            record = json.loads(log_path.read_text(encoding="utf-8").splitlines()[-1])
            self.assertEqual(record["message"], "job_submitted")
            self.assertEqual(record["job_id"], "1.gadi-pbs")
            self.assertEqual(record["ncpus"], 2)
            self.assertEqual(record["level"], "INFO")
            self.tearDown()

    def test_phase_timer_only_logs_when_enabled(self) -> None:
        logger = logging.getLogger("nbhopper.test_phase")
        with self.assertLogs(logger, level="INFO") as captured:
            with PhaseTimer(logger, True).phase("job"):
                pass
            logger.info("marker")
        self.assertEqual([record.getMessage() for record in captured.records], ["phase_timing", "marker"])

        with self.assertLogs(logger, level="INFO") as captured:
            with PhaseTimer(logger, False).phase("job"):
                pass
            logger.info("marker")
        self.assertEqual([record.getMessage() for record in captured.records], ["marker"])


if __name__ == "__main__":
    unittest.main()
