import unittest

from nbhopper.models import ConnectionMessage, JobDescriptor, MessageFormatError, MessageStatus


class ConnectionMessageTest(unittest.TestCase):
    def test_parse_and_url(self) -> None:
        message = ConnectionMessage.parse("gadi-gpu-v100-0001 abcdef 42.gadi-pbs 40500", MessageStatus.NEW)
        self.assertEqual(message.host, "gadi-gpu-v100-0001")
        self.assertEqual(message.job_id, "42.gadi-pbs")
        self.assertEqual(message.port, 40500)
        self.assertTrue(message.ok)
        self.assertEqual(message.url(8889), "http://localhost:8889/?token=abcdef")

    def test_rejects_malformed_lines(self) -> None:
        for text in ("node token 42", "node token 42.gadi-pbs port", "a b c d e"):
            with self.subTest(text=text):
                with self.assertRaises(MessageFormatError):
                    ConnectionMessage.parse(text, MessageStatus.NEW)

    def test_error_message(self) -> None:
        message = ConnectionMessage.error("join hh5")
        self.assertEqual(message.status, MessageStatus.ERROR)
        self.assertFalse(message.ok)
        self.assertEqual(message.detail, "join hh5")


class JobDescriptorTest(unittest.TestCase):
    def test_qsub_resources(self) -> None:
        descriptor = JobDescriptor(
            queue="gpuvolta",
            ncpus=12,
            ngpus=1,
            mem="96GB",
            walltime="4:00:00",
            jobfs="100GB",
            project="w35",
            storage=None,
            environment="analysis3",
        )
        args = descriptor.qsub_resources("gdata/hh5+scratch/w35")
        self.assertEqual(args[:4], ["-q", "gpuvolta", "-P", "w35"])
        self.assertIn("ngpus=1", args)
        self.assertIn("storage=gdata/hh5+scratch/w35", args)

    def test_no_gpu_flag_without_gpus(self) -> None:
        descriptor = JobDescriptor("normal", 1, 0, "4GB", "1:00:00", "10GB", "w35", None, "analysis3")
        self.assertFalse(any(item.startswith("ngpus") for item in descriptor.qsub_resources("gdata/hh5")))


if __name__ == "__main__":
    unittest.main()
