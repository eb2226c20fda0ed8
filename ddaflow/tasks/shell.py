import inspect
import os
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import List, Union, Tuple, Any, Dict, Optional

import ddaflow
from ddaflow.core.task import Task
from ddaflow.core.utility.cache import iter_files
from ddaflow.core.utility.target import Stdout, File
from ddaflow.core.utils import class_deco
from ddaflow.utility.utils import tail


class ShellTaskExecuteError(RuntimeError):
    def __init__(self, *args, returncode: int = None, stderr: str = ""):
        super().__init__(*args)
        self.returncode = returncode
        self.stderr = stderr


class CommandTaskComposeError(RuntimeError):
    pass


class MissingOutputError(RuntimeError):
    pass


class BashTask(Task):
    """Task that execute bash command by using subprocess.
    """

    default_config = {
        'publish_dirs': [],
        # exit codes not considered as failures, a version probe may tolerate anything
        'ok_exit_codes': [0],
    }

    def run(self, cmd: str, output=None, envs: dict = None):
        """This method should be thread safe, can not run functions depends one process-base attributes like ENV, ....

        Parameters
        ----------
        cmd
            the bash script
        output
            None for the captured stdout, otherwise glob patterns (nested in dicts/lists/tuples) matched against
            the files written in run_workdir
        envs: dict
            extra environment variables

        Returns
        -------
        The Stdout file or `output` with every pattern replaced by the matched File(s)
        """
        run_workdir = self.context.get('run_workdir', '')
        # 1. run bash command in shell with Popen
        stdout_file, stderr_file = self.execute_command(cmd, run_workdir, envs)

        # 2. handle output
        #   1. return stdout simulated by file
        if output is None:
            stdout = Stdout(Path(stdout_file).resolve())
            stdout.initialize_hash()
            return stdout

        #   2. return globed files
        collect_files: List[File] = []
        resolved_output = self.glob_output_files(output, run_workdir, collect_files)
        for file in collect_files:
            file.initialize_hash()
        self.publish_files(collect_files)
        return resolved_output

    def restore(self, result):
        """A cached run publishes its files again, the output directory may have been cleaned since."""
        self.publish_files(list(iter_files(result)))

    def publish_files(self, files: List[File]):
        flow_workdir = self.context.get('flow_workdir', '')
        publish_dirs = self.get_publish_dirs(flow_workdir, self.config_dict.get('publish_dirs', []))
        for file in files:
            for pub_dir in publish_dirs:
                self.publish(file, pub_dir)

    def execute_command(self, cmd: str, run_workdir: Union[str, Path], envs: dict = None) -> Tuple[Path, Path]:
        """Run command in shell

        Parameters
        ----------
        cmd
        run_workdir
        envs

        Returns
        -------
        paths of the stdout and the stderr file
        """
        run_workdir = Path(run_workdir)
        run_workdir.mkdir(parents=True, exist_ok=True)
        wrapped_cmd = f"cd {shlex.quote(str(run_workdir))};\n" \
                      f"{cmd}\n"
        # write into a sh file
        bash_script = run_workdir / ".__run__.sh"
        bash_script.write_text(wrapped_cmd)
        ddaflow.context.logger.debug(f"Executed shell cmd: \n{wrapped_cmd}\n in path: \n{run_workdir}\n")

        env = os.environ.copy()
        env.update({k: str(v) for k, v in (envs or {}).items()})
        stdout_f = run_workdir / ".__run__.stdout"
        stderr_f = run_workdir / ".__run__.stderr"
        with stdout_f.open('w') as stdout_file, stderr_f.open('w') as stderr_file:
            with subprocess.Popen(["bash", "-e", str(bash_script)], cwd=run_workdir,
                                  stdout=stdout_file, stderr=stderr_file, env=env) as p:
                try:
                    p.wait()
                except BaseException:
                    # timeout or cancellation, never leave the tool writing into run_workdir
                    p.kill()
                    raise

        returncode = p.returncode
        if returncode:
            stderr = tail(stderr_f.read_text(errors='replace'))
            if returncode not in self.config_dict.get('ok_exit_codes', [0]):
                raise ShellTaskExecuteError(f"Execute bash file: {bash_script} exited with status {returncode}"
                                            f" in {run_workdir}:\n{stderr}", returncode=returncode, stderr=stderr)
            ddaflow.context.logger.info(f"Tolerated exit status {returncode} of {bash_script}.")

        return stdout_f, stderr_f

    @classmethod
    def glob_output_files(cls, item, run_workdir, collect_files: List[File]):
        """Iterate over the item hierarchically and convert in-place and glob found str into Files
        and collect them into the third parameter. A pattern matching nothing becomes an empty tuple.
        """
        if type(item) is str:
            # key step
            files = [File(p.resolve())
                     for p in sorted(Path(run_workdir).glob(item))
                     if not p.name.startswith('.') and p.is_file()]
            cls.glob_output_files(files, run_workdir, collect_files)
            # may globed multiple files
            return files[0] if len(files) == 1 else tuple(files)

        elif isinstance(item, dict):
            for k, v in item.items():
                item[k] = cls.glob_output_files(v, run_workdir, collect_files)
        elif isinstance(item, (tuple, list)):
            if isinstance(item, tuple):
                item = list(item)
            for i, v in enumerate(item):
                item[i] = cls.glob_output_files(v, run_workdir, collect_files)
        elif isinstance(item, File):
            # collect File
            collect_files.append(item)

        return item

    @staticmethod
    def get_publish_dirs(flow_workdir, configured_publish_dirs: List[str]) -> List[Path]:
        """Get absolute path of configured publish dirs, relative ones are resolved in flow_workdir."""
        publish_dirs = []
        for pub_dir in configured_publish_dirs:
            pub_dir = Path(pub_dir).expanduser()
            if pub_dir.is_absolute():
                publish_dirs.append(pub_dir)
            else:
                publish_dirs.append(Path(flow_workdir, pub_dir).resolve())
        return publish_dirs

    @staticmethod
    def publish(file: File, pub_dir: Path) -> Path:
        """Hard link the output into pub_dir, copy it when linking across devices is impossible. A previously
        published file with the same name is replaced.
        """
        pub_dir.mkdir(parents=True, exist_ok=True)
        pub_file = pub_dir / file.name
        if pub_file.exists() or pub_file.is_symlink():
            pub_file.unlink()
        try:
            os.link(file.path, pub_file)
        except OSError:
            shutil.copyfile(file.path, pub_file)
        return pub_file


class ShellTask(BashTask):
    """Task used for composing bash command and then execute the command. Users need to implement the
    command method, whose signature becomes the signature of the task.
    """
    FUNC_PAIRS = [('command', 'run')]

    def run(self, *args, **kwargs):
        cmd, cmd_output = self.compose_command(*args, **kwargs)
        return super().run(cmd, cmd_output)

    def compose_command(self, *args, **kwargs) -> Tuple[str, Any]:
        res = self.command(*args, **kwargs)
        cmd, cmd_output = res if isinstance(res, tuple) else (res, None)
        if not isinstance(cmd, str) or not cmd.strip():
            raise CommandTaskComposeError(f"The command method of {self} must return the bash command as a "
                                          f"non-empty str, or a tuple of (command, output), got {res!r}")
        return cmd, cmd_output

    def command(self, *args, **kwargs) -> Union[str, Tuple[str, Any]]:
        """Users need to implement this function to compose the final bash command.

        Return the command, or a tuple of the command and the expected outputs:
            1. None represents the output is stdout.
            2. str variables represents glob syntax for files in the working directory.

        Examples:

            class Sort(ShellTask):
                def command(self, table: File):
                    return f"sort {table} > sorted.txt", "sorted.txt"
        """
        raise NotImplementedError("Please implement this function and return a bash script.")


class ToolTask(ShellTask):
    """An external tool node of a pipeline. Subclasses implement:

        command(**inputs) -> str    the command line, built from resolved File inputs and pipeline parameters
        outputs                     name -> glob pattern of the files the tool writes, formatted with the inputs
                                    and `params`: {'psms': '{mzml.sample}.mzid.tsv'}
        emit(outputs, **inputs)     the record emitted downstream, the resolved outputs by default

    Outputs listed in `optional_outputs` may be missing, others raise MissingOutputError when the tool
    exits successfully without writing them. Parameters listed in `param_names` are part of the invocation
    signature.
    """
    outputs: Dict[str, str] = {}
    optional_outputs: Tuple[str, ...] = ()
    param_names: Tuple[str, ...] = ()

    @property
    def params(self):
        """The immutable PipelineConfig of the running pipeline, None outside of a pipeline."""
        return self.context.get('params', None)

    def hash_params(self) -> dict:
        if self.params is None or not self.param_names:
            return {}
        return self.params.model_dump(mode='json', include=set(self.param_names))

    @property
    def task_hash(self) -> str:
        from dask.base import tokenize
        return tokenize(super().task_hash, sorted(self.outputs.items()), self.optional_outputs)

    def run(self, *args, **kwargs):
        inputs = self.bind_inputs(*args, **kwargs)
        cmd, declared = self.compose_command(**inputs)
        outputs = super(ShellTask, self).run(cmd, declared)
        return self.emit(self.check_outputs(outputs), **inputs)

    def bind_inputs(self, *args, **kwargs) -> Dict[str, Any]:
        bound = inspect.signature(self.command).bind(*args, **kwargs)
        bound.apply_defaults()
        return dict(bound.arguments)

    def compose_command(self, **inputs) -> Tuple[str, Dict[str, str]]:
        cmd, _ = super().compose_command(**inputs)
        return cmd, self.declare_outputs(inputs)

    def declare_outputs(self, inputs: Dict[str, Any]) -> Dict[str, str]:
        return {name: pattern.format(params=self.params, **inputs) for name, pattern in self.outputs.items()}

    def check_outputs(self, outputs: Dict[str, Any]) -> Dict[str, Any]:
        """An empty match of an optional output becomes None."""
        for name, value in outputs.items():
            if value == ():
                if name not in self.optional_outputs:
                    raise MissingOutputError(f"{self} exited successfully but did not write the output "
                                             f"`{name}`: {self.outputs[name]}")
                outputs[name] = None
        return outputs

    def emit(self, outputs: Dict[str, Any], **inputs) -> Any:
        return outputs

    def command(self, *args, **kwargs) -> str:
        raise NotImplementedError("Please implement this function and return the command line.")


def tool_option(flag: str, value: Optional[Any]) -> str:
    """`--flag value`, or nothing for a None/empty value."""
    if value is None or value == '' or value is False:
        return ''
    if value is True:
        return flag
    return f"{flag} {shlex.quote(str(value))}"


bash = BashTask()
shell = class_deco(ShellTask, 'command')
