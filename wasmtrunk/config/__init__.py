"""Layered configuration (config file, environment, CLI) and the runtime configs built from it."""