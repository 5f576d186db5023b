import unittest

from simcloud.cli import build_parser


class CliTest(unittest.TestCase):
    def test_status_arguments(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["--config", "simcloud.yaml", "status", "--job-id", "abc", "--hash", "ff"])
        self.assertEqual(args.command, "status")
        self.assertEqual(args.job_id, "abc")
        self.assertEqual(args.hash, "ff")

    def test_browse_defaults(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["--config", "simcloud.yaml", "browse"])
        self.assertIsNone(args.limit)
        self.assertEqual(args.offset, 0)

    def test_serve_port_override(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["--config", "simcloud.yaml", "serve", "--port", "9000"])
        self.assertEqual(args.port, 9000)


if __name__ == "__main__":
    unittest.main()
