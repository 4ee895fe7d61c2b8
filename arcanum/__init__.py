"""
Arcanum manages age encrypted secrets for a nix project.

Recipients for each encrypted file are read from the project's arcanum configuration, evaluated
with 'nix eval --json .#lib.arcanum' and cached per project. A file is encrypted to the recipients
declared for it and to the admin recipients of every scope (flake, nixos, homeManager, devShells)
that references it.

Regenerate the cache after adding files or changing recipients:

\b
    $ arcanum cache

Create or edit a secret without writing plaintext into the project:

\b
    $ arcanum edit "secrets/project.env.age"

Encrypt and decrypt files, '-' reads from stdin or writes to stdout:

\b
    $ arcanum encrypt "project.env" "secrets/project.env.age"
    $ arcanum decrypt "secrets/project.env.age" -

Re-encrypt secrets after the recipients have changed:

\b
    $ arcanum rekey "secrets/project.env.age"
    $ arcanum rekey

Resolve a git merge or rebase conflict in an encrypted file:

\b
    $ arcanum merge "secrets/project.env.age"
    $ git add "secrets/project.env.age"
"""

__version__ = '0.1.0'
