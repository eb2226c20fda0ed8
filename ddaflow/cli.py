import sys

import fire


class CLI:
    """Command line of the DDA pipeline. Options are the fields of PipelineConfig:

        ddaflow run --mzmldef mzmls.txt --tdb uniprot.fa --isobaric tmt16plex --genes --denoms "setA:126 setB:126"
        ddaflow run config.json --outdir results_v2
    """

    def run(self, config: str = None, **options):
        """Build and run the pipeline, the exit status is non-zero when the run fails.

        Parameters
        ----------
        config: str, optional
            A JSON file holding a flat mapping of options, the command line options take precedence.
        options: dict
            Options of the run, for example: --isobaric=tmt10plex --psmconflvl=0.05
        """
        import ddaflow
        from ddaflow.core.base import root_cause
        from ddaflow.pipeline.builder import run_pipeline
        from ddaflow.pipeline.config import PipelineConfig

        try:
            params = PipelineConfig.from_mapping(config, **options)
            report = run_pipeline(params)
        except Exception as exc:
            exc = root_cause(exc)
            ddaflow.context.logger.error(f"The run failed. {type(exc).__name__}: {exc}")
            sys.exit(1)
        ddaflow.context.logger.info(f"The run finished: {report.num_executed} tool runs executed, "
                                    f"{report.num_cached} reused from the cache, {len(report.warnings)} warnings.")

    def graph(self, config: str = None, **options) -> str:
        """Print the nodes and edges of the pipeline graph as JSON, nothing is run.

        Parameters
        ----------
        config: str, optional
            A JSON file holding a flat mapping of options.
        options: dict
            Options of the run.
        """
        from ddaflow.pipeline.builder import DdaPipeline
        from ddaflow.pipeline.config import PipelineConfig

        params = PipelineConfig.from_mapping(config, **options)
        pipeline = DdaPipeline(params)()
        return pipeline.serialize().model_dump_json(indent=2)


def main():
    fire.Fire(CLI)


if __name__ == '__main__':
    main()
