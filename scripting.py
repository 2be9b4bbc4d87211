"""
Post-scan script hook.

A script is a Python file exposing ``run(host, port)``. It is called once per
host with ``port=None`` and once per open port, and may return a dict with an
``output`` string and a ``data`` mapping. Nothing a script returns changes the
scan results.
"""

import importlib.util
import logging
import os

from models import ScriptResult


logger = logging.getLogger(__name__)

DEFAULT_SCRIPTS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "plugins")


class ScriptRunner:
    def __init__(self, scripts_dir=DEFAULT_SCRIPTS_DIR):
        self.scripts_dir = scripts_dir
        self._cache = {}

    def list_scripts(self):
        if not self.scripts_dir or not os.path.isdir(self.scripts_dir):
            return []
        return [
            name[:-3]
            for name in sorted(os.listdir(self.scripts_dir))
            if name.endswith(".py") and not name.startswith("_")
        ]

    def script_path(self, name):
        if name.endswith(".py"):
            return name
        return os.path.join(self.scripts_dir, f"{name}.py")

    def _load(self, name):
        if name in self._cache:
            return self._cache[name]
        full = self.script_path(name)
        if not os.path.isfile(full):
            raise FileNotFoundError(f"Script not found: {full}")
        stem = os.path.splitext(os.path.basename(full))[0]
        spec = importlib.util.spec_from_file_location(f"pp_script_{stem}", full)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot load script: {full}")
        mod = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(mod)
        fn = getattr(mod, "run", None)
        if not callable(fn):
            raise AttributeError(f"Script {name} has no run(host, port) function")
        self._cache[name] = fn
        return fn

    def run_script(self, name, host, port=None):
        result = ScriptResult(script_name=name, host=host, port=port)
        try:
            fn = self._load(name)
            returned = fn(host, port) or {}
        except Exception as exc:
            logger.debug("Script %s failed on %s:%s", name, host, port, exc_info=True)
            result.error = f"{type(exc).__name__}: {exc}"
            return result

        if not isinstance(returned, dict):
            returned = {"output": str(returned)}
        result.success = True
        result.output = str(returned.get("output", "") or "")
        result.data = {str(k): str(v) for k, v in (returned.get("data") or {}).items()}
        return result
