from .rheology import ConstitutiveError, Material, MatParLim, Rheology  # noqa: F401
