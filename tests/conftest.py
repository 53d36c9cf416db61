import jax

# Autodiff Jacobians should be computed in double precision.
jax.config.update("jax_enable_x64", True)
