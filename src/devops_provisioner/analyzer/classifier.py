"""Folder classification: project type, build commands and artifacts.

Detection is a lightweight heuristic over Maven/Gradle build files. Folders
that are not recognised fall back to caller supplied commands (generic
projects); a folder with neither a build nor a native build path is
reported as unsupported.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

MAVEN_FILES = ("pom.xml", "mvnw")
GRADLE_FILES = ("build.gradle", "build.gradle.kts", "gradlew")

# 框架识别：构建文件中出现的依赖坐标
FRAMEWORK_MARKERS = {
    "io.micronaut": "Micronaut",
    "org.springframework.boot": "SpringBoot",
    "io.helidon": "Helidon",
}

# GDK 中不对应具体云平台的子模块
NON_CLOUD_SUBPROJECTS = ("app", "lib")


class ProjectType(str, Enum):
    GDK = "GDK"
    MICRONAUT = "Micronaut"
    SPRING_BOOT = "SpringBoot"
    HELIDON = "Helidon"
    UNKNOWN = "Unknown"


class BuildSystem(str, Enum):
    MAVEN = "Maven"
    GRADLE = "Gradle"


@dataclass
class BuildPath:
    """A command and the location of the artifact it produces."""
    command: str
    artifact_location: str


@dataclass
class GenericBuild:
    """Caller supplied commands for folders that are not recognised."""

    build_command: Optional[str] = None
    artifact_location: Optional[str] = None
    native_build_command: Optional[str] = None
    native_artifact_location: Optional[str] = None


@dataclass
class FolderClassification:
    """Everything the pipeline assembler needs to know about a folder."""

    path: Path
    project_type: ProjectType
    build_system: Optional[BuildSystem] = None
    build: Optional[BuildPath] = None
    native_build: Optional[BuildPath] = None
    subprojects: List[str] = field(default_factory=list)
    sub_builds: Dict[str, BuildPath] = field(default_factory=dict)
    sub_native_builds: Dict[str, BuildPath] = field(default_factory=dict)
    dockerfiles: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def supported(self) -> bool:
        return self.build is not None or self.native_build is not None

    @property
    def cloud_subprojects(self) -> List[str]:
        return [name for name in self.subprojects if name not in NON_CLOUD_SUBPROJECTS]


class FolderClassifier(ABC):
    """Determines how a folder is built."""

    @abstractmethod
    def classify(self, folder: Path) -> FolderClassification:
        """Classify `folder`; unsupported folders have no build path."""


class BuildFileClassifier(FolderClassifier):
    """Classifies folders by inspecting their Maven or Gradle build files."""

    def __init__(self, overrides: Optional[Dict[str, GenericBuild]] = None) -> None:
        # key: 文件夹绝对路径或文件夹名
        self.overrides = overrides or {}

    def classify(self, folder: Path) -> FolderClassification:
        folder = Path(folder)
        build_system = self._detect_build_system(folder)
        subprojects = self._detect_subprojects(folder)
        dockerfiles = sorted(
            p.name for p in folder.iterdir()
            if p.is_file() and (p.name == "Dockerfile" or p.name.startswith("Dockerfile."))
        ) if folder.is_dir() else []

        if build_system and "oci" in subprojects:
            project_type = ProjectType.GDK
        else:
            project_type = self._detect_framework(folder) if build_system else ProjectType.UNKNOWN

        result = FolderClassification(
            path=folder,
            project_type=project_type,
            build_system=build_system,
            subprojects=subprojects if project_type is ProjectType.GDK else [],
            dockerfiles=dockerfiles,
        )

        if project_type is ProjectType.UNKNOWN:
            self._apply_overrides(result)
        elif project_type is ProjectType.GDK:
            for sub in result.cloud_subprojects:
                build = self._build_path(folder, project_type, build_system, sub)
                native = self._native_build_path(folder, project_type, build_system, sub)
                if build:
                    result.sub_builds[sub] = build
                if native:
                    result.sub_native_builds[sub] = native
            result.build = result.sub_builds.get("oci")
            result.native_build = result.sub_native_builds.get("oci")
        else:
            result.build = self._build_path(folder, project_type, build_system)
            result.native_build = self._native_build_path(folder, project_type, build_system)

        logger.info(
            "Classified %s as %s (%s)%s",
            folder, project_type.value,
            build_system.value if build_system else "no build system",
            "" if result.supported else " - unsupported",
        )
        return result

    def _apply_overrides(self, result: FolderClassification) -> None:
        generic = (
            self.overrides.get(str(result.path.resolve()))
            or self.overrides.get(result.path.name)
            or self.overrides.get("*")
        )
        if not generic:
            return
        if generic.build_command and generic.artifact_location:
            result.build = BuildPath(generic.build_command, generic.artifact_location)
        if generic.native_build_command and generic.native_artifact_location:
            result.native_build = BuildPath(
                generic.native_build_command, generic.native_artifact_location
            )

    @staticmethod
    def _detect_build_system(folder: Path) -> Optional[BuildSystem]:
        if any((folder / name).is_file() for name in MAVEN_FILES):
            return BuildSystem.MAVEN
        if any((folder / name).is_file() for name in GRADLE_FILES):
            return BuildSystem.GRADLE
        return None

    @staticmethod
    def _detect_subprojects(folder: Path) -> List[str]:
        if not folder.is_dir():
            return []
        subprojects = []
        for child in sorted(folder.iterdir()):
            if child.is_dir() and any(
                (child / name).is_file() for name in ("pom.xml", "build.gradle", "build.gradle.kts")
            ):
                subprojects.append(child.name)
        return subprojects

    @staticmethod
    def _detect_framework(folder: Path) -> ProjectType:
        for name in ("pom.xml", "build.gradle", "build.gradle.kts"):
            build_file = folder / name
            if not build_file.is_file():
                continue
            text = build_file.read_text(encoding="utf-8", errors="ignore")
            for marker, project_type in FRAMEWORK_MARKERS.items():
                if marker in text:
                    return ProjectType(project_type)
        return ProjectType.UNKNOWN

    def _build_path(
        self,
        folder: Path,
        project_type: ProjectType,
        build_system: BuildSystem,
        sub: Optional[str] = None,
    ) -> Optional[BuildPath]:
        name = folder.name
        if build_system is BuildSystem.MAVEN:
            if project_type in (ProjectType.MICRONAUT, ProjectType.SPRING_BOOT):
                return BuildPath(
                    "chmod 777 ./mvnw && ./mvnw package --no-transfer-progress -DskipTests",
                    f"target/{name}-{read_maven_version(folder)}.jar",
                )
            if project_type is ProjectType.HELIDON:
                return BuildPath(
                    "mvn package --no-transfer-progress -DskipTests",
                    f"target/{name}-{read_maven_version(folder)}.jar",
                )
            if project_type is ProjectType.GDK:
                return BuildPath(
                    f"chmod 777 ./mvnw && ./mvnw package -pl {sub} -am --no-transfer-progress -DskipTests",
                    f"{sub}/target/{sub}-{read_maven_version(folder / sub)}.jar",
                )
        else:
            if project_type is ProjectType.MICRONAUT:
                return BuildPath(
                    "chmod 777 ./gradlew && ./gradlew build -x test",
                    f"build/libs/{name}-{read_gradle_version(folder)}-all.jar",
                )
            if project_type is ProjectType.SPRING_BOOT:
                return BuildPath(
                    "chmod 777 ./gradlew && ./gradlew build -x test",
                    f"build/libs/{name}-{read_gradle_version(folder, '0.0.1')}-SNAPSHOT.jar",
                )
            if project_type is ProjectType.GDK:
                return BuildPath(
                    f"chmod 777 ./gradlew && ./gradlew {sub}:build -x test",
                    f"{sub}/build/libs/{sub}-{read_gradle_version(folder / sub)}-all.jar",
                )
        return None

    def _native_build_path(
        self,
        folder: Path,
        project_type: ProjectType,
        build_system: BuildSystem,
        sub: Optional[str] = None,
    ) -> Optional[BuildPath]:
        name = folder.name
        if build_system is BuildSystem.MAVEN:
            if project_type is ProjectType.MICRONAUT:
                return BuildPath(
                    "chmod 777 ./mvnw && ./mvnw install --no-transfer-progress -Dpackaging=native-image -DskipTests",
                    f"target/{name}",
                )
            if project_type is ProjectType.SPRING_BOOT:
                return BuildPath(
                    "chmod 777 ./mvnw && ./mvnw --no-transfer-progress native:compile -Pnative -DskipTests",
                    f"target/{name}",
                )
            if project_type is ProjectType.HELIDON:
                return BuildPath(
                    "mvn --no-transfer-progress package -Pnative-image -DskipTests",
                    f"target/{name}",
                )
            if project_type is ProjectType.GDK:
                app = "app" if (folder / "app").is_dir() else "lib"
                return BuildPath(
                    f"chmod 777 ./mvnw && ./mvnw install -pl {app} -am --no-transfer-progress -DskipTests"
                    f" && ./mvnw install -pl {sub} --no-transfer-progress -Dpackaging=native-image -DskipTests",
                    f"{sub}/target/{sub}",
                )
        else:
            if project_type in (ProjectType.MICRONAUT, ProjectType.SPRING_BOOT):
                return BuildPath(
                    "chmod 777 ./gradlew && ./gradlew nativeCompile -x test",
                    f"build/native/nativeCompile/{name}",
                )
            if project_type is ProjectType.GDK:
                return BuildPath(
                    f"chmod 777 ./gradlew && ./gradlew {sub}:nativeCompile -x test",
                    f"{sub}/build/native/nativeCompile/{sub}",
                )
        return None


def read_maven_version(folder: Path, default: str = "0.1") -> str:
    """Project version from pom.xml, ignoring the parent's version."""
    pom = folder / "pom.xml"
    if not pom.is_file():
        return default
    try:
        root = ET.parse(pom).getroot()
    except ET.ParseError as exc:
        logger.warning("Cannot parse %s: %s", pom, exc)
        return default
    namespace = root.tag[: root.tag.index("}") + 1] if root.tag.startswith("{") else ""
    version = root.find(f"{namespace}version")
    if version is not None and version.text:
        return version.text.strip()
    return default


_GRADLE_VERSION = re.compile(r"""^\s*version\s*=\s*(['"])([0-9].*?)\1""")


def read_gradle_version(folder: Path, default: str = "0.1") -> str:
    for name in ("build.gradle", "build.gradle.kts"):
        script = folder / name
        if not script.is_file():
            continue
        for line in script.read_text(encoding="utf-8", errors="ignore").splitlines():
            match = _GRADLE_VERSION.match(line)
            if match:
                return match.group(2)
    return default
