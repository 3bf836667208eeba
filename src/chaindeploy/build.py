"""Solidity compilation with a content-addressed artifact cache."""

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import solcx
from solcx.exceptions import SolcError

from .constants import DEFAULT_OPTIMIZER_RUNS
from .exceptions import CompileError, ContractNotFoundError
from .paths import get_artifact_cache_dir
from .types import ArtifactRef, CompilerDiagnostic

logger = logging.getLogger(__name__)

# Called as compiler(standard_input, solc_version, base_path=..., allow_paths=...)
Compiler = Callable[..., Dict[str, Any]]

OUTPUT_SELECTION = ["abi", "metadata", "evm.bytecode.object", "evm.deployedBytecode.object"]


def solcx_compile(
    input_data: Dict[str, Any],
    solc_version: str,
    base_path: Optional[str] = None,
    allow_paths: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """
    Compile standard JSON input with py-solc-x, installing solc if needed.

    Args:
        input_data: Standard JSON input
        solc_version: Compiler version, e.g. "0.8.24"
        base_path: Directory solc resolves imported source units against
        allow_paths: Extra directories solc may read imports from

    Returns:
        Standard JSON output. Compiler errors are left in the output for the
        caller to report.
    """
    installed = {str(v) for v in solcx.get_installed_solc_versions()}
    if solc_version not in installed:
        logger.info("Installing solc %s", solc_version)
        solcx.install_solc(solc_version)

    try:
        return solcx.compile_standard(
            input_data,
            base_path=base_path,
            allow_paths=allow_paths or None,
            solc_version=solc_version,
        )
    except SolcError as e:
        # compile_standard raises on severity=error; the JSON output is still attached
        stdout = getattr(e, "stdout_data", None)
        if stdout:
            try:
                return json.loads(stdout)
            except json.JSONDecodeError:
                pass
        raise CompileError(
            [CompilerDiagnostic(None, None, None, "error", str(e).strip())]
        ) from e


def load_artifact_cache(cache_path: Path) -> Optional[Dict[str, Any]]:
    """
    Load a cached compiler output.

    Returns:
        Compiler output, or None if the file doesn't exist or is corrupted
    """
    try:
        with open(cache_path) as f:
            return json.load(f)
    except (FileNotFoundError, json.JSONDecodeError):
        return None


def save_artifact_cache(output: Dict[str, Any], cache_path: Path) -> None:
    """
    Save a compiler output to disk.

    Creates parent directories if they don't exist.
    """
    cache_path.parent.mkdir(parents=True, exist_ok=True)
    with open(cache_path, "w") as f:
        json.dump(output, f)


def compute_build_key(sources: Dict[str, str], solc_version: str, settings: Dict[str, Any]) -> str:
    """Hash of source contents, compiler version and settings."""
    material = json.dumps(
        {"sources": sources, "version": solc_version, "settings": settings},
        sort_keys=True,
    )
    return hashlib.sha256(material.encode()).hexdigest()


def _line_and_column(content: str, offset: int) -> Tuple[int, int]:
    # solc offsets are byte offsets into the UTF-8 source
    prefix = content.encode()[:offset].decode(errors="ignore")
    line = prefix.count("\n") + 1
    column = len(prefix) - (prefix.rfind("\n") + 1) + 1
    return line, column


def parse_diagnostics(output: Dict[str, Any], sources: Dict[str, str]) -> List[CompilerDiagnostic]:
    """Turn the ``errors`` section of standard JSON output into diagnostics."""
    diagnostics = []
    for error in output.get("errors", []):
        location = error.get("sourceLocation") or {}
        file = location.get("file")
        line = column = None
        if file in sources and location.get("start", -1) >= 0:
            line, column = _line_and_column(sources[file], location["start"])
        diagnostics.append(
            CompilerDiagnostic(
                file=file,
                line=line,
                column=column,
                severity=error.get("severity", "error"),
                message=error.get("message") or error.get("formattedMessage", ""),
                code=error.get("errorCode"),
            )
        )
    return diagnostics


class Builder:
    """Compiles Solidity sources into ArtifactRefs."""

    def __init__(
        self,
        solc_version: str,
        cache_dir: Optional[Union[Path, str]] = None,
        optimizer_runs: Optional[int] = DEFAULT_OPTIMIZER_RUNS,
        evm_version: Optional[str] = None,
        compiler: Optional[Compiler] = None,
        project_root: Optional[Union[Path, str]] = None,
        remappings: Sequence[str] = (),
        allow_paths: Sequence[Union[Path, str]] = (),
    ):
        """
        Args:
            solc_version: Compiler version, e.g. "0.8.24"
            cache_dir: Cache root (defaults to ./.chaindeploy)
            optimizer_runs: Optimizer runs, or None to disable the optimizer
            evm_version: Target EVM version, or None for the compiler default
            compiler: Callable (standard_input, version, base_path=,
                      allow_paths=) -> standard_output; defaults to py-solc-x
            project_root: Directory source unit names are relative to, and
                          the compiler's base path (defaults to the cwd)
            remappings: Import remappings, e.g. "@openzeppelin/=lib/openzeppelin-contracts/"
            allow_paths: Extra directories imports may be read from
        """
        self.solc_version = solc_version
        self.cache_dir = get_artifact_cache_dir(cache_dir)
        self.optimizer_runs = optimizer_runs
        self.evm_version = evm_version
        self.project_root = Path(project_root) if project_root is not None else Path.cwd()
        self.remappings = list(remappings)
        self.allow_paths = [Path(p) for p in allow_paths]
        self._compiler = compiler or solcx_compile
        self._memory: Dict[str, Dict[str, Any]] = {}

    def settings(self) -> Dict[str, Any]:
        settings: Dict[str, Any] = {
            "optimizer": {
                "enabled": self.optimizer_runs is not None,
                "runs": self.optimizer_runs or DEFAULT_OPTIMIZER_RUNS,
            },
            # Metadata then embeds every loaded source, imports included
            "metadata": {"useLiteralContent": True},
            "outputSelection": {"*": {"*": OUTPUT_SELECTION}},
        }
        if self.evm_version:
            settings["evmVersion"] = self.evm_version
        if self.remappings:
            settings["remappings"] = self.remappings
        return settings

    def standard_input(self, sources: Dict[str, str]) -> Dict[str, Any]:
        return {
            "language": "Solidity",
            "sources": {name: {"content": content} for name, content in sources.items()},
            "settings": self.settings(),
        }

    def source_unit_name(self, path: Union[Path, str]) -> str:
        """
        Name a source file the way the compiler and explorers see it.

        Files under the project root are named relative to it
        ("contracts/MyToken.sol"); anything else keeps its absolute path.
        """
        resolved = Path(path).resolve()
        try:
            return resolved.relative_to(self.project_root.resolve()).as_posix()
        except ValueError:
            return resolved.as_posix()

    def read_sources(self, source_paths: Sequence[Union[Path, str]]) -> Dict[str, str]:
        """
        Read source files, keyed by source unit name.

        Raises:
            CompileError: If a file is missing
        """
        sources: Dict[str, str] = {}
        missing = []
        for path in source_paths:
            name = self.source_unit_name(path)
            try:
                sources[name] = Path(path).read_text()
            except FileNotFoundError:
                missing.append(CompilerDiagnostic(name, None, None, "error", "source file not found"))
        if missing:
            raise CompileError(missing)
        return sources

    def compiler_paths(self, sources: Dict[str, str]) -> Tuple[str, List[str]]:
        """Base path and allowed import directories passed to the compiler."""
        allowed = [self.project_root.resolve(), *(p.resolve() for p in self.allow_paths)]
        for name in sources:
            path = Path(name)
            if path.is_absolute() and path.parent not in allowed:
                allowed.append(path.parent)
        return str(self.project_root.resolve()), [str(p) for p in allowed]

    def compile(self, sources: Dict[str, str]) -> Tuple[str, Dict[str, Any]]:
        """
        Compile sources, or fetch the output from cache.

        A cached output is discarded when a file it imported has changed on
        disk since it was compiled.

        Returns:
            Tuple of (build_key, standard JSON output)

        Raises:
            CompileError: If the compiler reports any error
        """
        settings = self.settings()
        key = compute_build_key(sources, self.solc_version, settings)

        output = self._memory.get(key)
        if output is None:
            output = load_artifact_cache(self.cache_dir / f"{key}.json")
        if output is not None and not self._imports_changed(output, sources):
            logger.debug("Artifact cache hit %s", key[:12])
            self._memory[key] = output
            return key, output

        logger.info("Compiling %d source(s) with solc %s", len(sources), self.solc_version)
        base_path, allow_paths = self.compiler_paths(sources)
        output = self._compiler(
            self.standard_input(sources),
            self.solc_version,
            base_path=base_path,
            allow_paths=allow_paths,
        )

        diagnostics = parse_diagnostics(output, sources)
        errors = [d for d in diagnostics if d.severity == "error"]
        for warning in diagnostics:
            if warning.severity != "error":
                logger.warning("%s", warning)
        if errors:
            raise CompileError(errors)

        self._memory[key] = output
        save_artifact_cache(output, self.cache_dir / f"{key}.json")
        return key, output

    def verification_input(self, metadata: Optional[str], sources: Dict[str, str]) -> Dict[str, Any]:
        """
        Standard JSON input holding every source a contract was compiled from.

        Imported files are taken from the compiler metadata, which carries
        their literal content. Without metadata the compiled sources are used.
        """
        used = _parse_metadata(metadata).get("sources") or {}
        if not used:
            return self.standard_input(sources)

        loaded: Dict[str, str] = {}
        for name, entry in used.items():
            content = entry.get("content") if isinstance(entry, dict) else None
            if content is None:
                content = sources.get(name)
            if content is None:
                content = self._read_unit(name)
            if content is None:
                logger.warning("Source %s is missing from the verification input", name)
                continue
            loaded[name] = content
        return self.standard_input(loaded)

    def build_all(self, source_paths: Sequence[Union[Path, str]]) -> Dict[str, ArtifactRef]:
        """
        Compile sources and return every contract they define.

        Returns:
            Dictionary mapping contract name -> ArtifactRef
        """
        sources = self.read_sources(source_paths)
        key, output = self.compile(sources)

        artifacts: Dict[str, ArtifactRef] = {}
        for source_name, contracts in output.get("contracts", {}).items():
            for name, data in contracts.items():
                evm = data.get("evm", {})
                bytecode = evm.get("bytecode", {}).get("object", "")
                deployed = evm.get("deployedBytecode", {}).get("object")
                metadata = data.get("metadata")
                artifacts[name] = ArtifactRef(
                    contract_name=name,
                    bytecode=_hex(bytecode),
                    abi=data.get("abi", []),
                    source_name=source_name,
                    deployed_bytecode=_hex(deployed) if deployed is not None else None,
                    compiler_version=_compiler_version(metadata) or self.solc_version,
                    standard_json_input=self.verification_input(metadata, sources),
                    build_key=key,
                )
        return artifacts

    def build(
        self,
        source_paths: Sequence[Union[Path, str]],
        contract_name: Optional[str] = None,
    ) -> ArtifactRef:
        """
        Compile sources and return one contract's artifact.

        Args:
            source_paths: Solidity files to compile together
            contract_name: Contract to return; defaults to the one named after
                           the first source file, or the only contract built

        Raises:
            CompileError: If compilation fails
            ContractNotFoundError: If the contract is not among the outputs
        """
        artifacts = self.build_all(source_paths)

        if contract_name is None:
            stem = Path(source_paths[0]).stem if source_paths else None
            if stem in artifacts:
                contract_name = stem
            elif len(artifacts) == 1:
                contract_name = next(iter(artifacts))
            else:
                raise ContractNotFoundError(
                    f"Several contracts built ({', '.join(sorted(artifacts))}); choose one"
                )

        if contract_name not in artifacts:
            raise ContractNotFoundError(
                f"Contract '{contract_name}' not found in {', '.join(map(str, source_paths))}"
            )
        return artifacts[contract_name]

    def _read_unit(self, name: str) -> Optional[str]:
        path = self.project_root / name
        try:
            return path.read_text()
        except OSError:
            return None

    def _imports_changed(self, output: Dict[str, Any], sources: Dict[str, str]) -> bool:
        for contracts in output.get("contracts", {}).values():
            for data in contracts.values():
                used = _parse_metadata(data.get("metadata")).get("sources") or {}
                for name, entry in used.items():
                    if name in sources or not isinstance(entry, dict) or "content" not in entry:
                        continue
                    current = self._read_unit(name)
                    if current is not None and current != entry["content"]:
                        logger.info("Imported source %s changed; recompiling", name)
                        return True
        return False


def _hex(code: str) -> str:
    return code if code.startswith("0x") else "0x" + code


def _parse_metadata(metadata: Optional[str]) -> Dict[str, Any]:
    if not metadata:
        return {}
    try:
        parsed = json.loads(metadata)
    except (json.JSONDecodeError, TypeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _compiler_version(metadata: Optional[str]) -> Optional[str]:
    try:
        return _parse_metadata(metadata)["compiler"]["version"]
    except (KeyError, TypeError):
        return None
