"""Engine core: contracts, errors, planning, execution and progress."""
