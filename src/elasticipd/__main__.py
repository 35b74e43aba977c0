import sys
from .config import Config, apply_cli_overrides
from .logging_setup import setup_logger
from .errors import FatalExhaustion, ShutdownMutationError
from .daemon import startup, run_loop


def main(argv=None):

    cfg = apply_cli_overrides(Config(), argv)

    logger = setup_logger(
        name=cfg.logger_name,
        level=cfg.log_level,
        log_file=cfg.log_file,
        max_bytes=cfg.log_max_bytes,
        backup_count=cfg.log_backup_count,
        enable_structured_console=cfg.enable_structured_console,
        enable_structured_file=cfg.enable_structured_file,
        structured_log_file=cfg.structured_log_file
    )

    exit_code = 0
    runtime = None
    try:
        runtime = startup(cfg)
        run_loop(cfg, runtime.reconciler, runtime.sink,
                 structured_logger=runtime.structured_logger)
    except SystemExit as e:
        exit_code = e.code if isinstance(e.code, int) else 1
    except (FatalExhaustion, ShutdownMutationError) as e:
        logger.critical(f"Fatal: {e}")
        exit_code = 1
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
        exit_code = 130
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        exit_code = 1
    finally:
        if runtime is not None and runtime.http_server is not None:
            runtime.http_server.stop()
        for h in logger.handlers:
            h.flush()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
