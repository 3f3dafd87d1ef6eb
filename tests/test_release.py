import unittest

from l4t_release import InvalidVersion, ReleaseVersion, validate_version_string


class ValidateVersionStringTests(unittest.TestCase):
    def test_digits_and_dots_are_accepted(self) -> None:
        for text in ["36.4.4", "35.6.1", "1.2.3.4", "36", ".5", "1..2"]:
            with self.subTest(text=text):
                self.assertEqual(text, validate_version_string(text))
                self.assertTrue(text.replace(".", "").isdigit())

    def test_non_digit_characters_are_rejected(self) -> None:
        for text in ["36.4.4a", "r36.4.4", "36-4-4", " 36.4.4", "36.4.4\n", "", "...", "٣٦.٤.٤"]:
            with self.subTest(text=text), self.assertRaises(InvalidVersion):
                validate_version_string(text)

    def test_invalid_version_is_a_value_error(self) -> None:
        with self.assertRaises(ValueError):
            validate_version_string("36.4.x")


class ReleaseVersionTests(unittest.TestCase):
    def test_parse_exposes_components(self) -> None:
        version = ReleaseVersion.parse("36.4.4")

        self.assertEqual((36, 4, 4), (version.major, version.minor, version.patch))
        self.assertEqual("36.4.4", str(version))

    def test_parse_rejects_wrong_component_count(self) -> None:
        for text in ["1.2.3.4", "36.4", "36", "36..4", "36.4."]:
            with self.subTest(text=text), self.assertRaises(InvalidVersion):
                ReleaseVersion.parse(text)

    def test_parse_rejects_non_digits_before_splitting(self) -> None:
        with self.assertRaises(InvalidVersion) as ctx:
            ReleaseVersion.parse("36.4.4a")

        self.assertIn("digits only", str(ctx.exception))

    def test_download_names_derive_from_components(self) -> None:
        version = ReleaseVersion.parse("36.4.4")

        self.assertEqual("jetson_linux_r36.4.4_aarch64.tbz2", version.bsp_tarball)
        self.assertEqual("tegra_linux_sample-root-filesystem_r36.4.4_aarch64.tbz2", version.rootfs_tarball)
        self.assertEqual(
            "https://developer.nvidia.com/downloads/embedded/l4t/r36_release_v4.4/release/"
            "jetson_linux_r36.4.4_aarch64.tbz2",
            version.bsp_url,
        )
        self.assertEqual(
            "https://developer.nvidia.com/downloads/embedded/l4t/r36_release_v4.4/release/"
            "tegra_linux_sample-root-filesystem_r36.4.4_aarch64.tbz2",
            version.rootfs_url,
        )

    def test_versions_compare_by_value(self) -> None:
        self.assertEqual(ReleaseVersion(35, 6, 1), ReleaseVersion.parse("35.6.1"))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
