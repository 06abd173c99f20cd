import tempfile
import unittest
from pathlib import Path

from devops_provisioner.templates import TemplateExpander


class TemplateExpanderTests(unittest.TestCase):
    def test_replaces_double_brace_placeholders_only(self) -> None:
        text = TemplateExpander().render("devbuild_spec.yaml", {
            "build_command": "mvn package",
            "artifact_location": "target/demo.jar",
            "output_path": "demo.jar",
            "output_name": "app_fat_jar",
        })

        self.assertIn("mvn package", text)
        self.assertIn("cp target/demo.jar demo.jar", text)
        self.assertIn("graalvm-${GRAALVM_VERSION}-jdk${JAVA_VERSION}", text)
        self.assertNotIn("${{", text)

    def test_missing_values_are_left_in_place(self) -> None:
        text = TemplateExpander().render("oke_configmap.yaml", {})
        self.assertIn("${{app_name}}", text)

    def test_expand_writes_into_devops_directory(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            folder = Path(tmp)
            text = TemplateExpander().expand(
                "docker_nibuild_spec.yaml",
                {"build_command": "make", "dockerfile": "Dockerfile", "image_name": "demo", "output_name": "img"},
                folder=folder,
                target="oci/docker_nibuild_spec.yaml",
            )

            written = folder / ".devops" / "oci" / "docker_nibuild_spec.yaml"
            self.assertTrue(written.is_file())
            self.assertEqual(written.read_text(encoding="utf-8"), text)

    def test_custom_template_directory(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / "hello.txt").write_text("hello ${{who}} from ${HOME}", encoding="utf-8")
            expander = TemplateExpander(tmp)

            self.assertEqual(expander.render("hello.txt", {"who": "devops"}), "hello devops from ${HOME}")
            with self.assertRaises(FileNotFoundError):
                expander.render("absent.txt", {})


if __name__ == "__main__":
    unittest.main()
