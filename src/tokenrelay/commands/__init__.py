"""Built-in CLI sub-commands for tokenrelay.

* :mod:`~tokenrelay.commands.request` -- ``fetch``, ``refresh``, ``retry``
  and ``refresh-and-retry``, registered directly on the root app.
* :mod:`~tokenrelay.commands.credentials` -- inspect and edit the stored
  tokens of a profile.
* :mod:`~tokenrelay.commands.config` -- view and modify the user
  configuration.
"""
