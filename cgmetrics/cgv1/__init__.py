"""Controllers of the cgroups v1 hierarchies: cpu, cpuacct, memory and blkio."""