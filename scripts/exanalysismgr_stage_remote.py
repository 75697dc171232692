#!/usr/bin/env python3
# exanalysismgr_stage_remote.py
# This script will copy a job step's working directory and its
# generated FASTA file to a remote processing host.
import os

from wxflow import AttrDict, Logger, cast_strdict_as_dtypedict, parse_j2yaml
from pyanalysismgr.task.stage_remote import StageRemoteWorkDir

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
    StageRemoteWorkDirTask = StageRemoteWorkDir(config)

    # Run the task
    StageRemoteWorkDirTask.initialize()
    StageRemoteWorkDirTask.execute()
    StageRemoteWorkDirTask.finalize()
