"""Controllers of the unified cgroups v2 hierarchy: cpu, memory and io."""