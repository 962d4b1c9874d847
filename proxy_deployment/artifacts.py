"""
Compiled contract artifacts.

Artifacts are produced by the compiler toolchain (e.g. hardhat compile) and are
read-only inputs here. Both the hardhat directory layout
(``artifacts/contracts/Marketplace.sol/Marketplace.json``) and flat directories
of ``<ContractName>.json`` files are supported.
"""

import logging
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

from eth_utils import keccak
from hexbytes import HexBytes

from proxy_deployment.constants import ARTIFACTS_DIR
from proxy_deployment.exceptions import ArtifactNotFound
from proxy_deployment.utils import _load_json

logger = logging.getLogger(__name__)

DEBUG_SUFFIX = ".dbg.json"
BUILD_INFO_DIR = "build-info"


class ContractArtifact(NamedTuple):
    """The parts of a compiled contract needed to deploy and validate it."""

    name: str
    abi: List[dict]
    bytecode: HexBytes
    deployed_bytecode: HexBytes
    storage_layout: Optional[dict] = None
    source_name: Optional[str] = None

    @property
    def constructor_abi(self) -> Optional[dict]:
        for entry in self.abi:
            if entry.get("type") == "constructor":
                return entry
        return None

    def method_abis(self, method_name: str) -> List[dict]:
        return [
            entry
            for entry in self.abi
            if entry.get("type") == "function" and entry.get("name") == method_name
        ]

    @property
    def runtime_code_hash(self) -> bytes:
        return keccak(bytes(self.deployed_bytecode))


def artifact_from_json(data: dict, name: str = None) -> ContractArtifact:
    """Creates an artifact from a hardhat-style artifact JSON document."""
    if not isinstance(data, dict):
        raise ValueError("Artifact JSON must be an object.")
    name = data.get("contractName") or name
    if not name:
        raise ValueError("Artifact has no contract name.")
    return ContractArtifact(
        name=name,
        abi=list(data.get("abi", [])),
        bytecode=HexBytes(data.get("bytecode") or b""),
        deployed_bytecode=HexBytes(data.get("deployedBytecode") or b""),
        storage_layout=data.get("storageLayout"),
        source_name=data.get("sourceName"),
    )


class ArtifactStore:
    """Looks up compiled artifacts by contract name or by on-chain runtime code."""

    def __init__(self, artifacts_dir: Path = ARTIFACTS_DIR):
        self.artifacts_dir = Path(artifacts_dir)
        self._cache: Dict[str, ContractArtifact] = dict()

    def _artifact_paths(self) -> List[Path]:
        if not self.artifacts_dir.is_dir():
            return []
        paths = list()
        for path in sorted(self.artifacts_dir.rglob("*.json")):
            if path.name.endswith(DEBUG_SUFFIX) or BUILD_INFO_DIR in path.parts:
                continue
            paths.append(path)
        return paths

    def _find_path(self, contract_name: str) -> Path:
        matches = [p for p in self._artifact_paths() if p.stem == contract_name]
        if not matches:
            raise ArtifactNotFound(
                f"No compiled artifact for '{contract_name}' in {self.artifacts_dir}. "
                "Was the project compiled?"
            )
        if len(matches) != 1:
            locations = ", ".join(str(p) for p in matches)
            raise ArtifactNotFound(f"Artifact for '{contract_name}' is ambiguous: {locations}")
        return matches[0]

    def _load(self, path: Path) -> ContractArtifact:
        try:
            artifact = artifact_from_json(_load_json(path), name=path.stem)
            if artifact.storage_layout is None:
                storage_layout = self._storage_layout_from_build_info(path, artifact)
                if storage_layout is not None:
                    artifact = artifact._replace(storage_layout=storage_layout)
        except (OSError, ValueError) as e:
            # JSONDecodeError is a ValueError
            raise ArtifactNotFound(f"Unreadable artifact {path}: {e}") from e
        return artifact

    def _storage_layout_from_build_info(
        self, path: Path, artifact: ContractArtifact
    ) -> Optional[dict]:
        """Reads the storage layout from the hardhat build-info referenced by X.dbg.json."""
        debug_path = path.with_name(f"{path.stem}{DEBUG_SUFFIX}")
        if not debug_path.exists() or not artifact.source_name:
            return None
        debug_info = _load_json(debug_path)
        if not isinstance(debug_info, dict):
            raise ValueError(f"{debug_path.name} is not a hardhat debug file.")
        build_info_ref = debug_info.get("buildInfo")
        if not build_info_ref:
            return None
        build_info_path = (debug_path.parent / build_info_ref).resolve()
        if not build_info_path.exists():
            logger.warning("Build info %s for %s not found", build_info_path, artifact.name)
            return None
        build_info = _load_json(build_info_path)
        if not isinstance(build_info, dict):
            raise ValueError(f"{build_info_path.name} is not a hardhat build-info file.")
        contracts = build_info.get("output", {}).get("contracts", {})
        compiled = contracts.get(artifact.source_name, {}).get(artifact.name, {})
        return compiled.get("storageLayout")

    def get(self, contract_name: str) -> ContractArtifact:
        """Returns the artifact for a contract, or raises ArtifactNotFound."""
        if contract_name not in self._cache:
            path = self._find_path(contract_name)
            logger.debug("Loading artifact %s from %s", contract_name, path)
            self._cache[contract_name] = self._load(path)
        artifact = self._cache[contract_name]
        if not artifact.bytecode:
            raise ArtifactNotFound(
                f"Artifact for '{contract_name}' has no deployable bytecode "
                "(abstract contract or interface?)."
            )
        return artifact

    def find_by_runtime_code(self, code: bytes) -> Optional[ContractArtifact]:
        """Returns the artifact whose deployed bytecode matches the given runtime code."""
        if not code:
            return None
        code_hash = keccak(bytes(code))
        for path in self._artifact_paths():
            name = path.stem
            try:
                artifact = self._cache.get(name) or self._load(path)
            except ArtifactNotFound:
                logger.debug("Skipping %s: not a contract artifact", path)
                continue
            if artifact.deployed_bytecode and artifact.runtime_code_hash == code_hash:
                self._cache[name] = artifact
                return artifact
        return None
