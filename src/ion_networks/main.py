# main.py

from pathlib import Path
from typing import Annotated, List, Optional

import typer

from .config import IonNetworkConfig
from .ion_types import IonTypeLibrary

app = typer.Typer()


@app.command()
def library(
    polarity: Annotated[str, typer.Option(help="Ionization mode: positive or negative.")] = "positive",
    max_charge: Annotated[int, typer.Option(help="Maximum absolute charge.")] = 2,
    max_molecules: Annotated[int, typer.Option(help="Maximum number of molecules per ion.")] = 3,
    adduct: Annotated[
        Optional[List[str]], typer.Option(help="Adduct name (repeatable); default: polarity defaults.")
    ] = None,
    modification: Annotated[
        Optional[List[str]], typer.Option(help="Modification name (repeatable); default: -H2O, -2H2O, -NH3, -CO2.")
    ] = None,
    output_path: Annotated[Optional[Path], typer.Option(help="Save the ion types to this CSV.")] = None,
):
    """
    Lists the candidate ion types generated for the given selection.
    """
    cfg = IonNetworkConfig(
        polarity=polarity,
        max_charge=max_charge,
        max_molecules=max_molecules,
        selected_adducts=tuple(adduct) if adduct else None,
        selected_modifications=tuple(modification) if modification else None,
    )
    cfg.validate()
    df = IonTypeLibrary(cfg.to_library_config()).to_frame()

    if output_path is not None:
        print(f"Saving {len(df)} ion types to: {output_path}")
        df.to_csv(output_path, index=False)
    else:
        print(df.to_string(index=False))

    print("Done.")


@app.command()
def version():
    """
    Prints the package version.
    """
    from . import __version__

    print(__version__)


if __name__ == "__main__":
    app()
