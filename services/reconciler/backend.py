import subprocess
import threading

from common.config import SPARK_MASTER, SPARK_SUBMIT
from common.errors import LaunchRejected
from common.logs import log_event
from common.schemas import BackendInfo
from common.states import AppState


def _app_id(proc) -> str:
    return f"local-{proc.pid}"


class SparkSubmitBackend:
    """
    Launches applications with ``spark-submit`` and watches the child process.

    Process state is only known to the instance that launched it; other
    instances get ``None`` from ``query_info``. A finished process is
    reported once: successful exits through ``query_info``, failures through
    the async error callback. After that the job is forgotten.
    """

    def __init__(self, spark_submit: str = SPARK_SUBMIT, master: str = SPARK_MASTER, popen=subprocess.Popen):
        self._spark_submit = spark_submit
        self._master = master
        self._popen = popen
        self._lock = threading.Lock()
        self._procs = {}
        self._finished = {}
        self._killed = set()

    def build_command(self, submit_params: dict) -> list[str]:
        file = submit_params.get("file")
        if not file:
            raise LaunchRejected("submit params missing 'file'")

        cmd = [self._spark_submit, "--master", submit_params.get("master") or self._master]
        if submit_params.get("name"):
            cmd += ["--name", str(submit_params["name"])]
        if submit_params.get("class_name"):
            cmd += ["--class", str(submit_params["class_name"])]
        for key, value in (submit_params.get("conf") or {}).items():
            cmd += ["--conf", f"{key}={value}"]
        cmd.append(str(file))
        cmd.extend(str(a) for a in submit_params.get("args") or [])
        return cmd

    def launch(self, job_id, submit_params, on_async_error):
        cmd = self.build_command(submit_params)
        proc = self._popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        with self._lock:
            self._procs[job_id] = proc
        log_event("backend_launched", job_id=job_id, pid=proc.pid)

        watcher = threading.Thread(
            target=self._watch,
            args=(job_id, proc, on_async_error),
            name=f"watch-{job_id}",
            daemon=True,
        )
        watcher.start()

    def _watch(self, job_id, proc, on_async_error):
        rc = proc.wait()
        log_event("backend_exited", job_id=job_id, returncode=rc)

        with self._lock:
            self._procs.pop(job_id, None)
            if job_id in self._killed:
                self._killed.discard(job_id)
                return
            if rc == 0:
                self._finished[job_id] = BackendInfo(state=AppState.SUCCESS, backend_app_id=_app_id(proc))
                return

        try:
            on_async_error(LaunchRejected(f"spark-submit exited with {rc}"))
        except Exception as e:
            log_event("async_error_handler_failed", job_id=job_id, error=repr(e))

    def query_info(self, job_id):
        with self._lock:
            info = self._finished.pop(job_id, None)
            if info is not None:
                return info
            proc = self._procs.get(job_id)
        if proc is None:
            return None
        return BackendInfo(state=AppState.RUNNING, backend_app_id=_app_id(proc))

    def kill(self, job_id):
        with self._lock:
            self._finished.pop(job_id, None)
            proc = self._procs.get(job_id)
            if proc is None:
                return
            self._killed.add(job_id)

        log_event("backend_kill", job_id=job_id, pid=proc.pid)
        proc.terminate()
