from ..settings import CONFIG_DEFAULTS


def clean_config(mcmc_config):
    """
    Cleans the config dict and sets defaults.
    All config keys use lowercase with underscores.

    Returns a new dict; the caller's dict is left untouched.
    """
    mcmc_config = {str(key).lower(): value for key, value in mcmc_config.items()}

    for key, default in CONFIG_DEFAULTS.items():
        mcmc_config.setdefault(key, default)

    if 'gen' in mcmc_config:
        mcmc_config['gen'] = int(mcmc_config['gen'])
        if mcmc_config.get('chunk') is None:
            mcmc_config['chunk'] = max(1, mcmc_config['gen'] // 100)
        mcmc_config['chunk'] = int(mcmc_config['chunk'])

    if mcmc_config['dir'] is None:
        mcmc_config['dir'] = '.'

    mcmc_config['traitwise'] = bool(mcmc_config['traitwise'])
    mcmc_config['use_corr'] = bool(mcmc_config['use_corr'])

    return mcmc_config
