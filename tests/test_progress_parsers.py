import unittest

import progress


class TarListingProgressParserTests(unittest.TestCase):
    def test_entries_are_condensed_into_periodic_counts(self) -> None:
        parser = progress.TarListingProgressParser(interval=3)
        results = [parser.parse(f"Linux_for_Tegra/file{index}") for index in range(7)]

        self.assertEqual([0, 0, 1, 0, 0, 1, 0], [len(result) for result in results])
        self.assertEqual(3, results[2][0].current)
        self.assertEqual(6, results[5][0].current)
        self.assertEqual("Extracting", results[5][0].label)

    def test_tar_diagnostics_are_passed_through(self) -> None:
        parser = progress.TarListingProgressParser()

        self.assertIsNone(parser.parse("tar: Ignoring unknown extended header keyword 'LIBARCHIVE.xattr'"))
        self.assertIsNone(parser.parse("/usr/bin/tar: Exiting with failure status due to previous errors"))
        self.assertIsNone(parser.parse("   "))
        self.assertEqual(0, parser.count)

    def test_summary_reports_total_entries(self) -> None:
        parser = progress.TarListingProgressParser(interval=100)
        for index in range(42):
            parser.parse(f"rootfs/usr/lib/file{index}")

        summary = parser.summary()

        self.assertEqual(42, summary.current)
        self.assertIn("(42)", progress.format_progress_message(summary))


class DnfProgressParserTests(unittest.TestCase):
    def test_package_download_line(self) -> None:
        parser = progress.DnfProgressParser()
        updates = parser.parse("(12/240): lz4-1.9.4-6.fc40.x86_64.rpm   1.2 MB/s |  300 kB     00:00")

        self.assertEqual(1, len(updates))
        update = updates[0]
        self.assertEqual("Downloading packages", update.label)
        self.assertEqual(12, update.current)
        self.assertEqual(240, update.total)
        self.assertAlmostEqual(5.0, update.percent or 0)
        self.assertAlmostEqual(300 * 1000, update.size_bytes or 0, delta=1)
        self.assertAlmostEqual(1.2 * 1000**2, update.speed_bytes_per_sec or 0, delta=1)

    def test_transaction_line(self) -> None:
        parser = progress.DnfProgressParser()
        updates = parser.parse("  Installing       : lz4-1.9.4-6.fc40.x86_64                      12/240")

        self.assertEqual(1, len(updates))
        self.assertEqual("Installing", updates[0].label)
        self.assertEqual((12, 240), (updates[0].current, updates[0].total))

    def test_other_output_is_not_progress(self) -> None:
        parser = progress.DnfProgressParser()

        self.assertIsNone(parser.parse("Last metadata expiration check: 0:01:02 ago on Sat Oct 18 2026."))
        self.assertIsNone(parser.parse("Complete!"))


class GetProgressParserTests(unittest.TestCase):
    def test_verbose_tar_extraction_uses_listing_parser(self) -> None:
        parser, prepared = progress.get_progress_parser(["tar", "-xpvf", "rootfs.tbz2", "-C", "rootfs"])

        self.assertIsInstance(parser, progress.TarListingProgressParser)
        self.assertEqual(["tar", "-xpvf", "rootfs.tbz2", "-C", "rootfs"], prepared)

    def test_quiet_tar_has_no_parser(self) -> None:
        parser, _ = progress.get_progress_parser(["tar", "-xpf", "rootfs.tbz2"])

        self.assertIsNone(parser)

    def test_dnf_uses_dnf_parser(self) -> None:
        parser, _ = progress.get_progress_parser(["dnf", "install", "-y", "dpkg"])

        self.assertIsInstance(parser, progress.DnfProgressParser)

    def test_unknown_command(self) -> None:
        self.assertEqual((None, ["exportfs", "-avr"]), progress.get_progress_parser(["exportfs", "-avr"]))
        self.assertEqual((None, []), progress.get_progress_parser([]))


class ProgressFormattingTests(unittest.TestCase):
    def test_format_progress_message(self) -> None:
        update = progress.ProgressUpdate(
            label="download",
            percent=42.0,
            size_bytes=12.34 * 1024**2,
            total_size_bytes=700 * 1024**2,
            speed_bytes_per_sec=1.23 * 1024**2,
        )
        message = progress.format_progress_message(update)
        self.assertIn("download", message)
        self.assertIn("42%", message)
        self.assertIn("12 MiB / 700 MiB", message)
        self.assertIn("/s", message)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
