#!/usr/bin/env python3
# exanalysismgr_purge_orgdb_cache.py
# This script will purge old FASTA files from the organism database
# directory (and the shared spectrum file cache, when configured)
# when free space runs low or the directory exceeds its size cap.
import os

from wxflow import AttrDict, Logger, cast_strdict_as_dtypedict, parse_j2yaml
from pyanalysismgr.task.purge_cache import PurgeOrgDbCache

# Initialize root logger
logger = Logger(level='DEBUG', colored_log=True)


if __name__ == '__main__':

    # Take configuration from environment and cast it as python dictionary
    config_env = cast_strdict_as_dtypedict(os.environ)
    # Take configuration from YAML file to augment/append config dict
    config_yaml = parse_j2yaml(os.path.join(config_env['HOMEanalysismgr'], 'parm', 'analysismgr.yaml'), config_env)
    # ensure we are not duplicating keys between the environment and the YAML config
    analysismgr_dict = {}
    for key, value in config_yaml['analysismgr'].items():
        if key not in config_env.keys():
            analysismgr_dict[key] = value

    # Combine configs together
    config = AttrDict(**config_env, **analysismgr_dict)

    # Instantiate the task
    PurgeOrgDbCacheTask = PurgeOrgDbCache(config)

    # Run the task
    PurgeOrgDbCacheTask.initialize()
    PurgeOrgDbCacheTask.execute()
    PurgeOrgDbCacheTask.finalize()
