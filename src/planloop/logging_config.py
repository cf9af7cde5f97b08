"""Centralized logging configuration for planloop."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOGGER_NAME = "planloop"


def setup_logging(
	level: Optional[str] = None,
	log_dir: Optional[Path] = None,
) -> logging.Logger:
	"""
	Set up the planloop logger with a stderr handler and an optional rotating file.

	Args:
		level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to PLANLOOP_LOG_LEVEL or INFO.
		log_dir: Directory for planloop.log. No file handler when omitted.

	Returns:
		Configured logger
	"""
	level = level or os.getenv("PLANLOOP_LOG_LEVEL", "INFO")
	log_level = getattr(logging, level.upper(), logging.INFO)

	logger = logging.getLogger(LOGGER_NAME)
	logger.setLevel(log_level)

	# Avoid duplicate handlers
	if logger.handlers:
		for handler in logger.handlers:
			if isinstance(handler, logging.StreamHandler) and not isinstance(handler, RotatingFileHandler):
				handler.setLevel(log_level)
		return logger

	detailed_formatter = logging.Formatter(
		"%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
		datefmt="%Y-%m-%d %H:%M:%S",
	)
	simple_formatter = logging.Formatter("[%(levelname)s] %(message)s")

	# stdout carries JSON/CLI output
	console_handler = logging.StreamHandler(sys.stderr)
	console_handler.setLevel(log_level)
	console_handler.setFormatter(simple_formatter)
	logger.addHandler(console_handler)

	if log_dir is not None:
		log_path = Path(log_dir)
		log_path.mkdir(parents=True, exist_ok=True)
		file_handler = RotatingFileHandler(
			log_path / f"{LOGGER_NAME}.log",
			maxBytes=10 * 1024 * 1024,  # 10 MB
			backupCount=5,
		)
		file_handler.setLevel(logging.DEBUG)
		file_handler.setFormatter(detailed_formatter)
		logger.addHandler(file_handler)

	return logger
